from pathlib import Path

import pytest

from credentials import CredentialStore
from log_sink import LogSink


@pytest.fixture
def sink() -> LogSink:
    return LogSink()


@pytest.fixture
def bot_root(tmp_path: Path) -> Path:
    root = tmp_path / "home"
    root.mkdir()
    return root


@pytest.fixture
def credentials(bot_root: Path, sink: LogSink) -> CredentialStore:
    return CredentialStore(bot_root / ".env", sink)
