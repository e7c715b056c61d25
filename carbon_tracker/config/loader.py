"""
Configuration management and loading.

Handles tracker settings from an optional YAML file and environment overrides.
"""

import hashlib
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml


DEFAULT_API_URL = "https://api.cnaught.com"
DEFAULT_AUTH_DOMAIN = "auth.cnaught.com"

ENV_CONFIG_PATH = "CARBON_TRACKER_CONFIG"
ENV_CLAUDE_DIR = "CARBON_TRACKER_CLAUDE_DIR"
ENV_API_URL = "CARBON_TRACKER_API_URL"


class CostModelName(Enum):
    """Available energy cost models."""
    FLAT = "flat"
    INFERENCE_TIME = "inference_time"


@dataclass(frozen=True)
class ApiConfig:
    """Remote accounting service endpoints."""
    url: str = DEFAULT_API_URL
    graphql_path: str = "/graphql/public"
    timeout_seconds: float = 10.0
    auth_domain: str = DEFAULT_AUTH_DOMAIN
    auth_client_id: str = ""

    def __post_init__(self):
        """Validate endpoint values."""
        if not self.url:
            raise ValueError("api.url cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("api.timeout_seconds must be > 0")

    @property
    def graphql_url(self) -> str:
        return f"{self.url.rstrip('/')}{self.graphql_path}"

    @property
    def token_url(self) -> str:
        return f"https://{self.auth_domain}/oauth/token"


@dataclass(frozen=True)
class CarbonConfig:
    """Fixed constants of the carbon model."""
    cost_model: CostModelName = CostModelName.FLAT
    pue: float = 1.2
    carbon_intensity_g_per_kwh: float = 300.0

    def __post_init__(self):
        """Validate carbon constants are physically meaningful."""
        if self.pue < 1.0:
            raise ValueError("carbon.pue must be >= 1.0")
        if self.carbon_intensity_g_per_kwh <= 0:
            raise ValueError("carbon.carbon_intensity_g_per_kwh must be > 0")


@dataclass(frozen=True)
class SyncConfig:
    """Batch delivery pacing."""
    batch_size: int = 100
    batch_pause_seconds: float = 0.1

    def __post_init__(self):
        """Validate batch limits."""
        if not 0 < self.batch_size <= 100:
            raise ValueError("sync.batch_size must be between 1 and 100")
        if self.batch_pause_seconds < 0:
            raise ValueError("sync.batch_pause_seconds cannot be negative")


@dataclass(frozen=True)
class Settings:
    """Complete tracker configuration, passed explicitly to each component."""
    claude_dir: Path = field(default_factory=lambda: Path.home() / ".claude")
    api: ApiConfig = field(default_factory=ApiConfig)
    carbon: CarbonConfig = field(default_factory=CarbonConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @property
    def projects_dir(self) -> Path:
        """Directory holding one sub-directory of usage logs per project."""
        return self.claude_dir / "projects"

    @property
    def database_path(self) -> Path:
        """Local store file; non-default endpoints get their own file."""
        return self.claude_dir / f"carbon-tracker{database_suffix(self.api.url)}.db"


def database_suffix(api_url: str) -> str:
    """Return '' for the production endpoint, '-<hash8>' for any other."""
    if api_url == DEFAULT_API_URL:
        return ""
    return "-" + hashlib.sha256(api_url.encode("utf-8")).hexdigest()[:8]


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Load and validate tracker settings.

    The YAML file is optional; every key has a default. Environment values
    are read only from the mapping passed in, so callers decide whether the
    process environment participates.

    Args:
        path: Path to YAML settings file (falls back to CARBON_TRACKER_CONFIG)
        environ: Environment overrides (CARBON_TRACKER_CLAUDE_DIR, CARBON_TRACKER_API_URL)

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If an explicitly named settings file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    environ = environ or {}
    path = path or environ.get(ENV_CONFIG_PATH)

    raw_config: Dict = {}
    if path:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in settings file {path}: {e}")

    if not isinstance(raw_config, dict):
        raise ValueError("Settings file must contain a mapping")

    allowed_top_keys = {'claude_dir', 'api', 'carbon', 'sync'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    settings = Settings(
        api=_parse_api_config(_section(raw_config, 'api')),
        carbon=_parse_carbon_config(_section(raw_config, 'carbon')),
        sync=_parse_sync_config(_section(raw_config, 'sync')),
    )

    if 'claude_dir' in raw_config:
        settings = replace(settings, claude_dir=Path(str(raw_config['claude_dir'])).expanduser())

    # Environment wins over the file
    if environ.get(ENV_CLAUDE_DIR):
        settings = replace(settings, claude_dir=Path(environ[ENV_CLAUDE_DIR]).expanduser())
    if environ.get(ENV_API_URL):
        settings = replace(settings, api=replace(settings.api, url=environ[ENV_API_URL]))

    return settings


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed_keys: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(data: Dict, key: str, path: str) -> float:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _parse_api_config(data: Dict) -> ApiConfig:
    _check_keys(data, {'url', 'graphql_path', 'timeout_seconds', 'auth_domain', 'auth_client_id'}, "api")

    kwargs = {}
    for key in ('url', 'graphql_path', 'auth_domain', 'auth_client_id'):
        if key in data:
            if not isinstance(data[key], str):
                raise ValueError(f"'{key}' in api must be a string")
            kwargs[key] = data[key]
    if 'timeout_seconds' in data:
        kwargs['timeout_seconds'] = _number(data, 'timeout_seconds', "api")

    return ApiConfig(**kwargs)


def _parse_carbon_config(data: Dict) -> CarbonConfig:
    """Parse and validate the carbon section.

    Raises:
        ValueError: If the cost model name is unknown or a constant is invalid
    """
    _check_keys(data, {'cost_model', 'pue', 'carbon_intensity_g_per_kwh'}, "carbon")

    kwargs = {}
    if 'cost_model' in data:
        model_str = data['cost_model']
        if not isinstance(model_str, str):
            raise ValueError("'cost_model' in carbon must be a string")
        try:
            kwargs['cost_model'] = CostModelName(model_str.lower())
        except ValueError:
            valid_models = [model.value for model in CostModelName]
            raise ValueError(f"'cost_model' in carbon must be one of: {valid_models}")
    for key in ('pue', 'carbon_intensity_g_per_kwh'):
        if key in data:
            kwargs[key] = _number(data, key, "carbon")

    return CarbonConfig(**kwargs)


def _parse_sync_config(data: Dict) -> SyncConfig:
    _check_keys(data, {'batch_size', 'batch_pause_seconds'}, "sync")

    kwargs = {}
    if 'batch_size' in data:
        batch_size = data['batch_size']
        if isinstance(batch_size, bool) or not isinstance(batch_size, int):
            raise ValueError("'batch_size' in sync must be an integer")
        kwargs['batch_size'] = batch_size
    if 'batch_pause_seconds' in data:
        kwargs['batch_pause_seconds'] = _number(data, 'batch_pause_seconds', "sync")

    return SyncConfig(**kwargs)
