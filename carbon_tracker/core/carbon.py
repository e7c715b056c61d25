"""
Carbon calculations for token usage.

Converts token counts into energy and CO2 estimates. Estimates are
deliberately approximate: energy depends on the model family and one of two
cost models, CO2 on a fixed grid carbon intensity.

Cost models:
1. Flat - Wh per 1000 tokens by family, times data-center PUE (default)
2. Inference time - (TTFT + output tokens / TPS) at an interpolated GPU
   power draw, times PUE, paid once per request
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from ..config.loader import CarbonConfig, CostModelName
from .token_counter import TokenCounts
from .usage_parser import SessionUsage, UsageRecord


class ModelFamily(str, Enum):
    """Coarse capability tiers used for coefficients and aggregation."""
    OPUS = "opus"
    SONNET = "sonnet"
    HAIKU = "haiku"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ModelProfile:
    """Energy characteristics of a model."""
    family: ModelFamily
    wh_per_1k_tokens: float
    display_name: str


@dataclass(frozen=True)
class InferenceProfile:
    """Throughput characteristics of a model family for the inference-time model."""
    ttft_seconds: float
    tokens_per_second: float
    gpu_load: float  # 0.0 -> low power bound, 1.0 -> high power bound


# Fixed model table - values are Wh per 1000 tokens before PUE
MODEL_PROFILES: Dict[str, ModelProfile] = {
    "claude-opus-4-5-20251101": ModelProfile(ModelFamily.OPUS, 0.030, "Claude Opus 4.5"),
    "claude-opus-4-20250514": ModelProfile(ModelFamily.OPUS, 0.028, "Claude Opus 4"),
    "claude-3-opus-20240229": ModelProfile(ModelFamily.OPUS, 0.025, "Claude 3 Opus"),
    "claude-sonnet-4-20250514": ModelProfile(ModelFamily.SONNET, 0.015, "Claude Sonnet 4"),
    "claude-3-5-sonnet-20241022": ModelProfile(ModelFamily.SONNET, 0.014, "Claude 3.5 Sonnet"),
    "claude-3-5-sonnet-20240620": ModelProfile(ModelFamily.SONNET, 0.014, "Claude 3.5 Sonnet"),
    "claude-3-sonnet-20240229": ModelProfile(ModelFamily.SONNET, 0.012, "Claude 3 Sonnet"),
    "claude-3-5-haiku-20241022": ModelProfile(ModelFamily.HAIKU, 0.006, "Claude 3.5 Haiku"),
    "claude-3-haiku-20240307": ModelProfile(ModelFamily.HAIKU, 0.005, "Claude 3 Haiku"),
}

# Keyword fallbacks, checked in order
FAMILY_FALLBACKS: List[ModelProfile] = [
    ModelProfile(ModelFamily.OPUS, 0.028, "Unknown Model"),
    ModelProfile(ModelFamily.SONNET, 0.015, "Unknown Model"),
    ModelProfile(ModelFamily.HAIKU, 0.005, "Unknown Model"),
]

# Unknown models are assumed to be mid-tier
DEFAULT_PROFILE = ModelProfile(ModelFamily.UNKNOWN, 0.015, "Unknown Model")

INFERENCE_PROFILES: Dict[ModelFamily, InferenceProfile] = {
    ModelFamily.OPUS: InferenceProfile(ttft_seconds=1.0, tokens_per_second=40.0, gpu_load=1.0),
    ModelFamily.SONNET: InferenceProfile(ttft_seconds=0.6, tokens_per_second=70.0, gpu_load=0.6),
    ModelFamily.HAIKU: InferenceProfile(ttft_seconds=0.3, tokens_per_second=150.0, gpu_load=0.25),
    ModelFamily.UNKNOWN: InferenceProfile(ttft_seconds=0.6, tokens_per_second=70.0, gpu_load=0.6),
}

GPU_POWER_LOW_WATTS = 300.0
GPU_POWER_HIGH_WATTS = 700.0

DEFAULT_PUE = 1.2
DEFAULT_CARBON_INTENSITY_G_PER_KWH = 300.0


def get_model_profile(model_id: str) -> ModelProfile:
    """Get the energy profile of a model, by exact id, then by family keyword."""
    if model_id in MODEL_PROFILES:
        return MODEL_PROFILES[model_id]

    lower_model = model_id.lower()
    for profile in FAMILY_FALLBACKS:
        if profile.family.value in lower_model:
            return profile

    return DEFAULT_PROFILE


class CostModel(ABC):
    """Strategy turning per-request token counts into energy."""

    name: CostModelName

    def __init__(
        self,
        pue: float = DEFAULT_PUE,
        carbon_intensity_g_per_kwh: float = DEFAULT_CARBON_INTENSITY_G_PER_KWH
    ):
        self.pue = pue
        self.carbon_intensity_g_per_kwh = carbon_intensity_g_per_kwh

    @abstractmethod
    def request_energy_wh(self, profile: ModelProfile, counts: TokenCounts) -> float:
        """Energy of one request in Wh, including PUE."""

    def energy_wh(self, profile: ModelProfile, requests: Iterable[TokenCounts]) -> float:
        return sum(self.request_energy_wh(profile, counts) for counts in requests)

    def co2_grams(self, energy_wh: float) -> float:
        """CO2 for an energy amount: kWh times grid carbon intensity."""
        return (energy_wh / 1000) * self.carbon_intensity_g_per_kwh


class FlatCostModel(CostModel):
    """Wh per 1000 tokens by family, times PUE. All token kinds count equally."""

    name = CostModelName.FLAT

    def request_energy_wh(self, profile: ModelProfile, counts: TokenCounts) -> float:
        return (counts.total_tokens / 1000) * profile.wh_per_1k_tokens * self.pue


class InferenceTimeCostModel(CostModel):
    """Energy from inference duration at an interpolated GPU power draw.

    Duration is a fixed time-to-first-token plus output tokens divided by
    the family's throughput, so TTFT is paid once per request.
    """

    name = CostModelName.INFERENCE_TIME

    def __init__(
        self,
        pue: float = DEFAULT_PUE,
        carbon_intensity_g_per_kwh: float = DEFAULT_CARBON_INTENSITY_G_PER_KWH,
        power_low_watts: float = GPU_POWER_LOW_WATTS,
        power_high_watts: float = GPU_POWER_HIGH_WATTS
    ):
        super().__init__(pue, carbon_intensity_g_per_kwh)
        self.power_low_watts = power_low_watts
        self.power_high_watts = power_high_watts

    def power_watts(self, load: float) -> float:
        load = min(max(load, 0.0), 1.0)
        return self.power_low_watts + load * (self.power_high_watts - self.power_low_watts)

    def request_energy_wh(self, profile: ModelProfile, counts: TokenCounts) -> float:
        inference = INFERENCE_PROFILES[profile.family]
        seconds = inference.ttft_seconds + counts.output_tokens / inference.tokens_per_second
        return (seconds / 3600) * self.power_watts(inference.gpu_load) * self.pue


DEFAULT_COST_MODEL: CostModel = FlatCostModel()


def build_cost_model(config: CarbonConfig) -> CostModel:
    """Create the configured cost model."""
    cost_model_cls = {
        CostModelName.FLAT: FlatCostModel,
        CostModelName.INFERENCE_TIME: InferenceTimeCostModel,
    }[config.cost_model]
    return cost_model_cls(
        pue=config.pue,
        carbon_intensity_g_per_kwh=config.carbon_intensity_g_per_kwh
    )


@dataclass(frozen=True)
class FamilyCarbon:
    energy_wh: float
    co2_grams: float


@dataclass(frozen=True)
class CarbonResult:
    """Energy and CO2 of a request or session, with a per-family breakdown."""
    energy_wh: float
    co2_grams: float
    breakdown: Dict[ModelFamily, FamilyCarbon]

    @property
    def energy_kwh(self) -> float:
        return self.energy_wh / 1000

    @property
    def co2_kg(self) -> float:
        return self.co2_grams / 1000


def _single_family_result(family: ModelFamily, energy_wh: float, co2_grams: float) -> CarbonResult:
    return CarbonResult(
        energy_wh=energy_wh,
        co2_grams=co2_grams,
        breakdown={family: FamilyCarbon(energy_wh, co2_grams)}
    )


def calculate_carbon_from_tokens(
    input_tokens: int,
    output_tokens: int,
    cache_creation_tokens: int = 0,
    cache_read_tokens: int = 0,
    model: str = "unknown",
    cost_model: Optional[CostModel] = None
) -> CarbonResult:
    """Calculate carbon for token counts of a single request."""
    cost_model = cost_model or DEFAULT_COST_MODEL
    profile = get_model_profile(model)
    counts = TokenCounts(input_tokens, output_tokens, cache_creation_tokens, cache_read_tokens)

    energy_wh = cost_model.request_energy_wh(profile, counts)
    return _single_family_result(profile.family, energy_wh, cost_model.co2_grams(energy_wh))


def calculate_record_carbon(record: UsageRecord, cost_model: Optional[CostModel] = None) -> CarbonResult:
    return calculate_carbon_from_tokens(
        record.input_tokens,
        record.output_tokens,
        record.cache_creation_tokens,
        record.cache_read_tokens,
        model=record.model,
        cost_model=cost_model
    )


def calculate_session_carbon(session: SessionUsage, cost_model: Optional[CostModel] = None) -> CarbonResult:
    """Calculate carbon for a whole session.

    Walks the per-model breakdown; models of the same family collapse into
    one breakdown bucket with summed energy and CO2.

    Args:
        session: Parsed session usage
        cost_model: Strategy to use (flat by default)

    Returns:
        CarbonResult with session totals and per-family breakdown
    """
    cost_model = cost_model or DEFAULT_COST_MODEL

    requests_by_model: Dict[str, List[TokenCounts]] = {}
    for record in session.records:
        requests_by_model.setdefault(record.model, []).append(record.counts)

    breakdown: Dict[ModelFamily, FamilyCarbon] = {}
    total_energy_wh = 0.0
    total_co2 = 0.0

    for model, tokens in session.model_breakdown.items():
        profile = get_model_profile(model)
        # A breakdown without records is treated as one request
        requests = requests_by_model.get(model) or [TokenCounts(input_tokens=tokens)]
        energy_wh = cost_model.energy_wh(profile, requests)
        co2 = cost_model.co2_grams(energy_wh)

        total_energy_wh += energy_wh
        total_co2 += co2

        bucket = breakdown.get(profile.family, FamilyCarbon(0.0, 0.0))
        breakdown[profile.family] = FamilyCarbon(
            energy_wh=bucket.energy_wh + energy_wh,
            co2_grams=bucket.co2_grams + co2
        )

    return CarbonResult(energy_wh=total_energy_wh, co2_grams=total_co2, breakdown=breakdown)


@dataclass(frozen=True)
class CarbonEquivalents:
    """Relatable equivalents of an amount of CO2."""
    km_driven: float
    phone_charges: float
    led_light_hours: float
    cups_of_coffee: float
    web_searches: float


def calculate_equivalents(co2_grams: float) -> CarbonEquivalents:
    """Convert CO2 grams to everyday equivalents.

    Per unit: car ~120 g/km, smartphone charge ~8 g, 10 W LED ~3 g/hour,
    cup of coffee ~21 g, web search ~0.2 g.
    """
    return CarbonEquivalents(
        km_driven=co2_grams / 120,
        phone_charges=co2_grams / 8,
        led_light_hours=co2_grams / 3,
        cups_of_coffee=co2_grams / 21,
        web_searches=co2_grams / 0.2,
    )


def format_co2(grams: float) -> str:
    """Format CO2 for display: '< 0.01g', '5.68g', '1.000kg'."""
    if grams < 0.01:
        return "< 0.01g"
    if round(grams, 2) < 1000:
        return f"{grams:.2f}g"
    return f"{grams / 1000:.3f}kg"


def format_energy(wh: float) -> str:
    """Format energy for display: '< 0.001 Wh', '0.123 Wh', '12.34 Wh', '1.234 kWh'."""
    if wh < 0.001:
        return "< 0.001 Wh"
    if round(wh, 3) < 1:
        return f"{wh:.3f} Wh"
    if round(wh, 2) < 1000:
        return f"{wh:.2f} Wh"
    return f"{wh / 1000:.3f} kWh"
