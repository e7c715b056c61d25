"""
Session accounting.

Glues the usage parser, the carbon model and the store together: parse a
session log, estimate its carbon, and upsert the result as one row.
"""

import logging
from pathlib import Path
from typing import Callable, Optional

from ..config.loader import Settings
from ..storage.models import SessionAccountingRow
from ..storage.repository import CarbonStore, open_store
from .carbon import CarbonResult, CostModel, build_cost_model, calculate_session_carbon
from .project_identifier import PROJECT_NAME_KEY, resolve_project_identifier, short_hash
from .usage_parser import (
    SessionUsage,
    find_log_path,
    find_logs_for_project,
    parse_session,
    session_id_from_path,
)

logger = logging.getLogger(__name__)


def custom_project_name(store: CarbonStore, raw_path: str) -> Optional[str]:
    """User-configured project name: per-project first, then global."""
    return (
        store.get_project_config(short_hash(raw_path), PROJECT_NAME_KEY)
        or store.get_config(PROJECT_NAME_KEY)
    )


def identifier_resolver(store: CarbonStore) -> Callable[[str], str]:
    """Project identifier resolution that honours custom names in the store."""
    def resolve(raw_path: str) -> str:
        return resolve_project_identifier(raw_path, custom_project_name(store, raw_path))
    return resolve


def build_accounting_row(usage: SessionUsage, carbon: CarbonResult) -> SessionAccountingRow:
    return SessionAccountingRow(
        session_id=usage.session_id,
        project_path=usage.project_path,
        project_identifier=usage.project_identifier,
        input_tokens=usage.totals.input_tokens,
        output_tokens=usage.totals.output_tokens,
        cache_creation_tokens=usage.totals.cache_creation_tokens,
        cache_read_tokens=usage.totals.cache_read_tokens,
        total_tokens=usage.totals.total_tokens,
        energy_wh=carbon.energy_wh,
        co2_grams=carbon.co2_grams,
        primary_model=usage.primary_model,
        created_at=usage.started_at,
        updated_at=usage.ended_at,
    )


def save_session(store: CarbonStore, usage: SessionUsage, carbon: CarbonResult) -> SessionAccountingRow:
    row = build_accounting_row(usage, carbon)
    store.upsert_session(row)
    return row


def account_log(
    store: CarbonStore,
    log_path: Path,
    cost_model: CostModel,
    project_path: Optional[str] = None
) -> Optional[SessionAccountingRow]:
    """Parse, estimate and upsert one session log.

    Returns:
        The saved row, or None if the session has no token usage
    """
    usage = parse_session(log_path, project_path, resolve_identifier=identifier_resolver(store))
    if usage.totals.total_tokens == 0:
        logger.debug("No token usage found for session %s", usage.session_id)
        return None

    carbon = calculate_session_carbon(usage, cost_model)
    row = save_session(store, usage, carbon)
    logger.info(
        "Saved session %s: %d tokens, %.3fg CO2",
        row.session_id, row.total_tokens, row.co2_grams
    )
    return row


def record_session(
    settings: Settings,
    session_id: str,
    log_path: Optional[Path] = None,
    project_path: Optional[str] = None
) -> Optional[SessionAccountingRow]:
    """Record a session after a response, locating its log if needed.

    Args:
        settings: Tracker settings
        session_id: Session to record
        log_path: Explicit log path, if the caller knows it
        project_path: Raw project path, if the caller knows it

    Returns:
        The saved row, or None if no log or no usage was found
    """
    if log_path is None:
        log_path = find_log_path(session_id, settings.projects_dir, project_path)
    if log_path is None:
        logger.info("No usage log found for session %s", session_id)
        return None

    with open_store(settings.database_path) as store:
        return account_log(store, Path(log_path), build_cost_model(settings.carbon), project_path)


def backfill_sessions(
    store: CarbonStore,
    project_path: str,
    projects_dir: Path,
    cost_model: CostModel
) -> int:
    """Import historical sessions of one project that are not stored yet.

    Returns:
        Number of sessions imported
    """
    existing = set(store.get_all_session_ids())
    count = 0
    for log_path in find_logs_for_project(project_path, projects_dir):
        if session_id_from_path(log_path) in existing:
            continue
        try:
            row = account_log(store, log_path, cost_model, project_path)
        except OSError as e:
            logger.warning("Failed to backfill %s: %s", log_path, e)
            continue
        if row is not None:
            count += 1
    return count
