"""Point-in-time snapshot polled by the dashboard. Never triggers transitions."""

from __future__ import annotations

import sys
from typing import Any, Dict, Optional

import psutil

from bot_files import BotFileStore
from bot_process import BotProcessManager
from log_sink import LogSink

STATUS_LOG_LIMIT = 100


def _process_rss(pid: Optional[int]) -> int:
    if not pid:
        return 0
    try:
        return int(psutil.Process(pid).memory_info().rss)
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return 0


def build_status(
    manager: BotProcessManager,
    sink: LogSink,
    files: BotFileStore,
    current_user: Optional[str] = None,
) -> Dict[str, Any]:
    snap = manager.snapshot()
    panel = psutil.Process()
    return {
        "status": snap.state.value,
        "logs": [e.to_dict() for e in sink.recent(STATUS_LOG_LIMIT)],
        "filesCount": files.count_entries(),
        "uptime": snap.uptime_ms,
        "memoryUsage": int(panel.memory_info().rss),
        "memoryTotal": int(psutil.virtual_memory().total),
        "botMemoryUsage": _process_rss(snap.pid),
        "nodeVersion": snap.runtime_version,
        "availableNodeVersions": list(manager.available_versions),
        "currentUser": current_user,
        "platform": sys.platform,
    }
