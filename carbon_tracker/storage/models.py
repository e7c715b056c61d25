"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class SessionAccountingRow:
    """Persisted carbon accounting of one session.

    created_at is fixed by the first insert; every later upsert replaces the
    remaining fields and marks the row as needing sync again.
    """
    session_id: str
    project_path: str
    project_identifier: str
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    total_tokens: int
    energy_wh: float
    co2_grams: float
    primary_model: str
    created_at: datetime
    updated_at: datetime
    needs_sync: bool = True


@dataclass(frozen=True)
class AggregateStats:
    total_sessions: int
    total_tokens: int
    total_input_tokens: int
    total_output_tokens: int
    total_cache_creation_tokens: int
    total_cache_read_tokens: int
    total_energy_wh: float
    total_co2_grams: float


EMPTY_STATS = AggregateStats(0, 0, 0, 0, 0, 0, 0.0, 0.0)


@dataclass(frozen=True)
class DailyStats:
    date: str
    sessions: int
    tokens: int
    energy_wh: float
    co2_grams: float


@dataclass(frozen=True)
class ProjectStats:
    project_identifier: str
    sessions: int
    tokens: int
    energy_wh: float
    co2_grams: float


@dataclass(frozen=True)
class AuthConfig:
    """Stored credentials for the remote accounting service."""
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    organization_id: Optional[str] = None
    updated_at: Optional[datetime] = None
