"""
Project directory name decoding.

Usage logs live under a directory named after the project path with every
separator replaced by '-'. Decoding is ambiguous when directory names contain
'-' themselves, so it is resolved against the filesystem.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

FILLER = "-"

# Inputs with more segments than this are not searched at all.
MAX_SEGMENTS = 64
# Upper bound on filesystem probes for one decode.
MAX_STEPS = 4096


def encode_project_path(project_path: str) -> str:
    """Encode a project path the way the assistant names its log directories."""
    return project_path.replace(os.sep, FILLER).replace("/", FILLER)


def decode_project_dir(encoded: str, root: str = os.sep, max_steps: int = MAX_STEPS) -> str:
    """Decode an encoded project directory name back to a filesystem path.

    Performs a depth-first search over every '-' boundary. At each boundary
    the separator interpretation is tried first, and only if the prefix built
    so far is an existing directory; otherwise the '-' is kept as a literal
    character of the current segment. The first complete path that exists on
    disk wins.

    This is a best-effort heuristic: when two real directories satisfy the
    search, the one reached first by the DFS is returned.

    Args:
        encoded: Directory name such as '-Users-a-my-project'
        root: Filesystem root the decoded path is anchored at
        max_steps: Budget of filesystem probes before giving up

    Returns:
        The decoded path, or the literal encoded string if nothing resolves
    """
    segments = encoded.split(FILLER)
    # A leading filler stands for the root separator
    if segments and segments[0] == "":
        segments = segments[1:]
    if not segments or any(s == "" for s in segments) or len(segments) > MAX_SEGMENTS:
        return encoded

    budget = [max_steps]
    result = _search(Path(root), segments, 0, segments[0], budget)
    if result is None:
        logger.debug("Could not decode project directory %s", encoded)
        return encoded
    return str(result)


def _search(
    base: Path,
    segments: List[str],
    index: int,
    current: str,
    budget: List[int]
) -> Optional[Path]:
    """Resolve segments[index + 1:] given the segment being built in `current`."""
    budget[0] -= 1
    if budget[0] < 0:
        return None

    candidate = base / current
    if index == len(segments) - 1:
        return candidate if candidate.exists() else None

    # Separator: close the current segment, only if it is a real directory
    if candidate.is_dir():
        found = _search(candidate, segments, index + 1, segments[index + 1], budget)
        if found is not None:
            return found

    # Literal: keep the filler inside the current segment
    return _search(base, segments, index + 1, current + FILLER + segments[index + 1], budget)
