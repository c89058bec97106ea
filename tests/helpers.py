"""Shared helpers for the test suite."""

import sys
import textwrap
import time
from pathlib import Path


# 70 chars in the accepted alphabet
VALID_TOKEN = "A" * 24 + "." + "B" * 6 + "." + "C" * 38

# the Python interpreter stands in for node/npm
RUNTIME_COMMAND = [sys.executable, "-u"]


def install_command(code: str) -> list:
    return [sys.executable, "-c", textwrap.dedent(code)]


INSTALL_OK = install_command("""
    import sys
    print("added 3 packages in 1s")
    sys.stderr.write("npm WARN deprecated left-pad@1.0.0\\n")
    sys.stderr.write("peer dependency missing\\n")
""")

SLEEPING_BOT = """
import os, sys, time
print("bot online", flush=True)
time.sleep(60)
"""


def write_bot(root: Path, source: str, name: str = "index.js") -> Path:
    root.mkdir(parents=True, exist_ok=True)
    path = root / name
    path.write_text(textwrap.dedent(source), encoding="utf-8")
    return path


def wait_until(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def messages(sink) -> list:
    return [e.message for e in sink.recent(sink.capacity)]


