"""
Hook payloads read from stdin.
"""

import json
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

M = TypeVar("M", bound=BaseModel)


class HookInput(BaseModel):
    """Fields common to all session hooks; unknown fields are ignored."""
    session_id: str
    project_path: Optional[str] = None
    cwd: Optional[str] = None

    @property
    def raw_project_path(self) -> Optional[str]:
        return self.project_path or self.cwd


class StopHookInput(HookInput):
    """Sent after each assistant response."""
    transcript_path: Optional[str] = None


class SessionEndHookInput(HookInput):
    """Sent when a session ends."""


class StatuslineModel(BaseModel):
    id: Optional[str] = None
    display_name: Optional[str] = None


class CurrentUsage(BaseModel):
    input_tokens: Optional[int] = 0
    output_tokens: Optional[int] = 0
    cache_creation_input_tokens: Optional[int] = 0
    cache_read_input_tokens: Optional[int] = 0


class ContextWindow(BaseModel):
    current_usage: Optional[CurrentUsage] = None


class StatuslineInput(BaseModel):
    """Sent on every status bar refresh; every field is optional."""
    session_id: Optional[str] = None
    project_path: Optional[str] = None
    cwd: Optional[str] = None
    model: Optional[StatuslineModel] = None
    context_window: Optional[ContextWindow] = None

    @property
    def usage(self) -> CurrentUsage:
        if self.context_window and self.context_window.current_usage:
            return self.context_window.current_usage
        return CurrentUsage()

    @property
    def model_id(self) -> str:
        return (self.model.id if self.model else None) or "unknown"


def read_hook_input(text: str, model: Type[M]) -> Optional[M]:
    """Parse a hook payload, returning None if it is empty or malformed."""
    if not text.strip():
        return None
    try:
        return model.model_validate(json.loads(text))
    except (ValueError, ValidationError):
        return None
