"""
Filename checks for every endpoint that touches the bot-files root.

Mutation endpoints address exactly one path segment. Nested paths only ever
come out of directory listings, so anything that looks like a path (or a
parent reference) is refused before the filesystem is touched.
"""

from __future__ import annotations

from pathlib import Path

from panel_errors import ValidationError

_FORBIDDEN = ("..", "/", "\\", "\x00")


def is_safe_name(name) -> bool:
    if not isinstance(name, str) or not name:
        return False
    if name == ".":
        return False
    return not any(tok in name for tok in _FORBIDDEN)


def require_safe_name(name) -> str:
    if not is_safe_name(name):
        raise ValidationError("Invalid filename")
    return name


def resolve_inside(root: Path, name) -> Path:
    """Join a single-segment ``name`` onto ``root``; the result is always a direct child."""
    require_safe_name(name)
    return Path(root).resolve() / name
