"""
Bot token persistence.

The token lives in a KEY=value file inside the bot-files root so the bot can
also read it with its own dotenv loader. It is cached in memory after the
first successful read and only ever handed to the child's environment.
"""

from __future__ import annotations

import os
import re
import threading
from pathlib import Path

from dotenv import dotenv_values

from log_sink import LogSink
from panel_errors import ValidationError

TOKEN_KEY = "DISCORD_TOKEN"

_TOKEN_RE = re.compile(r"^[A-Za-z0-9._-]{59,72}$")


def validate_bot_token(token) -> bool:
    if not token or not isinstance(token, str):
        return False
    if len(token) < 50 or len(token) > 100:
        return False
    return bool(_TOKEN_RE.match(token))


class CredentialStore:
    def __init__(self, path: Path, sink: LogSink):
        self.path = Path(path)
        self.sink = sink
        self._token = ""
        self._lock = threading.Lock()

    @property
    def has_token(self) -> bool:
        return bool(self.get_token())

    def load(self) -> str:
        """Read the token from disk into the cache. Returns "" when none is stored."""
        if not self.path.is_file():
            return ""
        try:
            values = dotenv_values(self.path)
        except (OSError, UnicodeDecodeError) as e:
            self.sink.append(f"Error loading token from {self.path.name}: {e}", "warning", "system")
            return ""
        token = str(values.get(TOKEN_KEY) or "").strip()
        if token:
            with self._lock:
                self._token = token
            self.sink.append(f"Bot token loaded from {self.path.name} file", "success", "system")
        return token

    def get_token(self) -> str:
        with self._lock:
            cached = self._token
        return cached or self.load()

    def save(self, token: str, runtime_version: str) -> None:
        if not validate_bot_token(token):
            raise ValidationError("Invalid Discord bot token format")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = f"{TOKEN_KEY}={token}\nNODE_ENV=production\nNODE_VERSION={runtime_version}\n"
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        # O_CREAT mode is ignored for an existing file
        os.chmod(self.path, 0o600)

        with self._lock:
            self._token = token

    def reload(self) -> str:
        """Drop the cached token and re-read the file, e.g. after it was edited or deleted."""
        with self._lock:
            self._token = ""
        return self.load()
