"""
Error types raised by the panel core and mapped to JSON responses by app.py.

Each error carries the HTTP status it should produce plus optional detail
fields that are merged into the response body.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PanelError(RuntimeError):
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.message}
        body.update(self.details)
        return body


class ValidationError(PanelError):
    """Bad input or an unmet precondition. Nothing was changed."""
    status_code = 400


class ConflictError(PanelError):
    """The request does not fit the current process state."""
    status_code = 400


class NotFoundError(PanelError):
    status_code = 404


class ArchiveError(PanelError):
    """The uploaded archive could not be opened at all."""
    status_code = 400


class ExternalProcessError(PanelError):
    """Dependency install or bot spawn failed; state is back to stopped."""
    status_code = 500

    def __init__(self, message: str, exit_code: Optional[int] = None, **details: Any):
        if exit_code is not None:
            details["exitCode"] = exit_code
        super().__init__(message, **details)
        self.exit_code = exit_code
