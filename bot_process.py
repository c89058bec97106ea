"""
Lifecycle of the single bot child process.

State machine:

    stopped -> installing (package.json present) -> starting -> running -> stopped
    stopped -> starting (no manifest)            -> running -> stopped

Only this class mutates the state, always under ``self._lock``. A start claims
the state before it releases the lock for the dependency install, so a second
start is rejected instead of queued. The move back to ``stopped`` after the
bot has run is made by the supervisor thread when the child actually exits,
never by the code that sends the signal.

Child output is message passing: one reader thread per pipe pushes complete
lines into a queue and a single consumer forwards them to the log sink.
"""

from __future__ import annotations

import enum
import logging
import os
import queue
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from credentials import CredentialStore
from log_sink import LogSink
from panel_errors import ConflictError, ExternalProcessError, ValidationError

log = logging.getLogger("bot_panel.bot_process")

DEFAULT_ENTRY_CANDIDATES = ("index.js", "bot.js", "main.js", "app.js")
DEFAULT_MANIFEST = "package.json"
DEFAULT_RUNTIME_COMMAND = ("node",)
DEFAULT_INSTALL_COMMAND = ("npm", "install", "--production", "--no-audit", "--no-fund")
DEFAULT_NODE_VERSIONS = ("18", "19", "20", "21")


class ProcessState(str, enum.Enum):
    STOPPED = "stopped"
    INSTALLING = "installing"
    STARTING = "starting"
    RUNNING = "running"


@dataclass
class BotProcessHandle:
    proc: subprocess.Popen
    main_file: str
    started_at: float
    started_mono: float
    exited: threading.Event = field(default_factory=threading.Event)
    exit_code: Optional[int] = None

    @property
    def pid(self) -> int:
        return self.proc.pid


@dataclass
class ProcessSnapshot:
    state: ProcessState
    uptime_ms: int
    runtime_version: str
    pid: Optional[int]
    started_at: Optional[float]


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


class OutputPump:
    """
    Turns a child's stdout/stderr into one stream of complete lines.

    Each pipe gets a reader thread that produces ``(stream, raw_line)`` messages;
    whoever iterates :meth:`lines` is the only consumer. ``readline`` holds a
    partial line back until its newline (or EOF) arrives.
    """

    def __init__(self, proc: subprocess.Popen, name: str = "child"):
        self._queue: "queue.Queue[Tuple[str, Optional[bytes]]]" = queue.Queue()
        self._readers: List[threading.Thread] = []
        for stream_name, stream in (("stdout", proc.stdout), ("stderr", proc.stderr)):
            if stream is None:
                continue
            self._readers.append(threading.Thread(
                target=self._read,
                args=(stream_name, stream),
                name=f"{name}-{stream_name}",
                daemon=True,
            ))

    def start(self) -> "OutputPump":
        for t in self._readers:
            t.start()
        return self

    def _read(self, stream_name: str, stream) -> None:
        try:
            for raw in iter(stream.readline, b""):
                self._queue.put((stream_name, raw))
        except (OSError, ValueError) as e:
            log.debug("%s reader stopped early: %s", stream_name, e)
        finally:
            self._queue.put((stream_name, None))
            stream.close()

    def lines(self, deadline: Optional[float] = None) -> Iterator[Tuple[str, str]]:
        """
        Yield ``(stream, text)`` for each non-empty line until every pipe closes.

        ``deadline`` is a ``time.monotonic()`` value; TimeoutError is raised once
        it passes.
        """
        open_streams = len(self._readers)
        while open_streams:
            timeout = None
            if deadline is not None:
                timeout = deadline - time.monotonic()
                if timeout <= 0:
                    raise TimeoutError("child output did not finish in time")
            try:
                stream_name, raw = self._queue.get(timeout=timeout)
            except queue.Empty:
                raise TimeoutError("child output did not finish in time") from None
            if raw is None:
                open_streams -= 1
                continue
            text = raw.decode("utf-8", errors="replace").strip()
            if text:
                yield stream_name, text


class BotProcessManager:
    def __init__(
        self,
        bot_root: Path,
        sink: LogSink,
        credentials: CredentialStore,
        *,
        runtime_command: Sequence[str] = DEFAULT_RUNTIME_COMMAND,
        install_command: Sequence[str] = DEFAULT_INSTALL_COMMAND,
        entry_candidates: Sequence[str] = DEFAULT_ENTRY_CANDIDATES,
        manifest_name: str = DEFAULT_MANIFEST,
        available_versions: Sequence[str] = DEFAULT_NODE_VERSIONS,
        runtime_version: str = "18",
        stop_grace_sec: float = 5.0,
        kill_wait_sec: float = 5.0,
        install_timeout_sec: Optional[float] = 300.0,
        tick_interval_sec: float = 1.0,
        startup_confirm_sec: float = 3.0,
    ):
        self.bot_root = Path(bot_root)
        self.sink = sink
        self.credentials = credentials
        self.runtime_command = list(runtime_command)
        self.install_command = list(install_command)
        self.entry_candidates = tuple(entry_candidates)
        self.manifest_name = manifest_name
        self.available_versions = tuple(str(v) for v in available_versions)
        self.stop_grace_sec = float(stop_grace_sec)
        self.kill_wait_sec = float(kill_wait_sec)
        self.install_timeout_sec = install_timeout_sec
        self.tick_interval_sec = float(tick_interval_sec)
        self.startup_confirm_sec = float(startup_confirm_sec)

        self._lock = threading.Lock()
        self._state = ProcessState.STOPPED
        self._runtime_version = str(runtime_version)
        self._handle: Optional[BotProcessHandle] = None
        self._install_proc: Optional[subprocess.Popen] = None
        self._uptime_ms = 0

    # ---------------- read side ----------------

    @property
    def state(self) -> ProcessState:
        with self._lock:
            return self._state

    @property
    def runtime_version(self) -> str:
        with self._lock:
            return self._runtime_version

    def snapshot(self) -> ProcessSnapshot:
        with self._lock:
            handle = self._handle
            if self._state is ProcessState.RUNNING and handle is not None:
                # recompute instead of trusting the last tick
                uptime = self._elapsed_ms(handle)
            else:
                uptime = self._uptime_ms
            return ProcessSnapshot(
                state=self._state,
                uptime_ms=uptime,
                runtime_version=self._runtime_version,
                pid=handle.pid if handle else None,
                started_at=handle.started_at if handle else None,
            )

    def find_entry_file(self) -> Optional[str]:
        for name in self.entry_candidates:
            if (self.bot_root / name).is_file():
                return name
        return None

    # ---------------- transitions ----------------

    def start(self, actor: str = "system") -> Dict[str, Any]:
        with self._lock:
            if self._state is ProcessState.RUNNING:
                raise ConflictError("Bot is already running")
            if self._state is ProcessState.INSTALLING:
                raise ConflictError("Dependencies are being installed. Please wait...")
            if self._state is ProcessState.STARTING:
                raise ConflictError("Bot is already starting")

            token = self.credentials.get_token()
            if not token:
                raise ValidationError("Please set Discord bot token first")
            if not self.bot_root.is_dir():
                raise ValidationError("No bot files found. Please upload your bot files first.")
            main_file = self.find_entry_file()
            if not main_file:
                self.sink.append("No main bot file found", "error", actor)
                raise ValidationError("No main bot file found", expectedFiles=list(self.entry_candidates))

            needs_install = (self.bot_root / self.manifest_name).is_file()
            self._state = ProcessState.INSTALLING if needs_install else ProcessState.STARTING

        if needs_install:
            try:
                self._install_dependencies(actor)
            except Exception:
                with self._lock:
                    self._set_stopped()
                raise
        else:
            self.sink.append(f"No {self.manifest_name} found, skipping dependency installation", "warning", actor)

        with self._lock:
            self._state = ProcessState.STARTING
            try:
                handle = self._spawn(main_file, token, actor)
            except Exception:
                self._set_stopped()
                raise
            version = self._runtime_version
            status = self._state.value

        threading.Thread(target=self._supervise, args=(handle, actor), name="BotSupervisor", daemon=True).start()
        threading.Thread(target=self._tick, args=(handle,), name="BotUptimeTick", daemon=True).start()
        if self.startup_confirm_sec > 0:
            confirm = threading.Timer(self.startup_confirm_sec, self._confirm_started, args=(handle, actor))
            confirm.daemon = True
            confirm.start()

        return {"mainFile": main_file, "nodeVersion": version, "status": status}

    def stop(self, actor: str = "system") -> Dict[str, Any]:
        with self._lock:
            handle = self._handle
            if self._state is not ProcessState.RUNNING or handle is None:
                raise ConflictError("Bot is not running")
            uptime_ms = self._elapsed_ms(handle)

        self.sink.append("Stopping bot process...", "warning", actor)
        self._send(handle, kill=False)
        if not handle.exited.wait(self.stop_grace_sec):
            self.sink.append(
                f"Bot did not exit within {self.stop_grace_sec:g}s, sending kill signal", "warning", actor
            )
            self._send(handle, kill=True)
            if not handle.exited.wait(self.kill_wait_sec):
                self.sink.append("Bot process did not exit after kill signal", "error", actor)
                raise ExternalProcessError("Failed to stop bot")

        self.sink.append("Bot process stopped", "warning", actor)
        return {"message": "Bot stopped successfully", "uptime": uptime_ms}

    def set_runtime_version(self, version, actor: str = "system") -> str:
        version = str(version or "").strip()
        if not version:
            raise ValidationError("Node.js version is required")
        with self._lock:
            if self._state is not ProcessState.STOPPED:
                raise ConflictError("Cannot switch Node.js version while bot is running")
            if version not in self.available_versions:
                raise ValidationError(f"Node.js version {version} is not available")
            self._runtime_version = version
        self.sink.append(f"Switched Node.js to version {version}", "success", actor)
        return version

    def shutdown(self, actor: str = "system") -> None:
        """Called on panel exit: abort an install in progress and stop the bot."""
        with self._lock:
            install = self._install_proc
            running = self._state is ProcessState.RUNNING

        if install is not None and install.poll() is None:
            install.kill()
            self.sink.append("Dependency install aborted by panel shutdown", "warning", actor)
        if running:
            try:
                self.stop(actor)
            except ConflictError:
                log.info("Bot exited on its own during shutdown")

    # ---------------- internals ----------------

    def _set_stopped(self) -> None:
        self._state = ProcessState.STOPPED
        self._handle = None
        self._uptime_ms = 0

    @staticmethod
    def _elapsed_ms(handle: BotProcessHandle) -> int:
        return int((time.monotonic() - handle.started_mono) * 1000)

    def _install_dependencies(self, actor: str) -> None:
        self.sink.append("Installing dependencies...", "info", actor)
        try:
            proc = subprocess.Popen(
                self.install_command,
                cwd=str(self.bot_root),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            self.sink.append(f"NPM install error: {e}", "error", actor)
            raise ExternalProcessError("Failed to install dependencies", details=str(e))

        with self._lock:
            self._install_proc = proc

        deadline = None
        if self.install_timeout_sec:
            deadline = time.monotonic() + float(self.install_timeout_sec)

        try:
            for stream_name, text in OutputPump(proc, name="install").start().lines(deadline):
                if stream_name == "stdout":
                    self.sink.append(f"NPM: {text}", "info", actor)
                elif "npm WARN" not in text:
                    self.sink.append(f"NPM Warning: {text}", "warning", actor)
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            code = proc.wait(timeout=remaining)
        except (TimeoutError, subprocess.TimeoutExpired):
            proc.kill()
            proc.wait()
            msg = f"Dependency install timed out after {float(self.install_timeout_sec):g}s"
            self.sink.append(msg, "error", actor)
            raise ExternalProcessError("Failed to install dependencies", details=msg)
        finally:
            with self._lock:
                self._install_proc = None

        if code != 0:
            self.sink.append(f"Failed to install dependencies (exit code: {code})", "error", actor)
            raise ExternalProcessError("Failed to install dependencies", exit_code=code)
        self.sink.append("Dependencies installed successfully", "success", actor)

    def _spawn(self, main_file: str, token: str, actor: str) -> BotProcessHandle:
        # caller holds self._lock
        env = os.environ.copy()
        env["DISCORD_TOKEN"] = token
        env["NODE_ENV"] = "production"
        env["NODE_VERSION"] = self._runtime_version

        self.sink.append(
            f"Starting bot from {main_file} with Node.js {self._runtime_version}...", "info", actor
        )
        try:
            proc = subprocess.Popen(
                [*self.runtime_command, main_file],
                cwd=str(self.bot_root),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            # ValueError: NUL bytes in the environment or command
            self._set_stopped()
            self.sink.append(f"Failed to start bot process: {e}", "error", actor)
            raise ExternalProcessError(f"Failed to start bot: {e}")

        handle = BotProcessHandle(
            proc=proc,
            main_file=main_file,
            started_at=time.time(),
            started_mono=time.monotonic(),
        )
        self._handle = handle
        self._state = ProcessState.RUNNING
        self._uptime_ms = 0
        log.info("bot spawned pid=%s entry=%s", proc.pid, main_file)
        return handle

    def _supervise(self, handle: BotProcessHandle, actor: str) -> None:
        try:
            for stream_name, text in OutputPump(handle.proc, name="bot").start().lines():
                if stream_name == "stdout":
                    self.sink.append(f"Bot: {text}", "info", "bot")
                else:
                    self.sink.append(f"Bot Error: {text}", "error", "bot")
        finally:
            self._on_exit(handle, handle.proc.wait(), actor)

    def _on_exit(self, handle: BotProcessHandle, code: int, actor: str) -> None:
        with self._lock:
            handle.exit_code = code
            if self._handle is handle:
                self._set_stopped()

        if code < 0:
            self.sink.append(f"Bot process terminated with signal: {_signal_name(-code)}", "warning", actor)
        elif code != 0:
            self.sink.append(f"Bot exited with code {code}", "error", actor)
        else:
            self.sink.append("Bot stopped normally", "info", actor)
        log.info("bot exited pid=%s code=%s", handle.pid, code)
        handle.exited.set()

    def _tick(self, handle: BotProcessHandle) -> None:
        while not handle.exited.wait(self.tick_interval_sec):
            with self._lock:
                if self._handle is not handle:
                    return
                self._uptime_ms = self._elapsed_ms(handle)

    def _confirm_started(self, handle: BotProcessHandle, actor: str) -> None:
        with self._lock:
            alive = self._handle is handle and self._state is ProcessState.RUNNING
            version = self._runtime_version
        if alive:
            self.sink.append(
                f"Bot {handle.main_file} started successfully with Node.js {version}!", "success", actor
            )

    @staticmethod
    def _send(handle: BotProcessHandle, kill: bool) -> None:
        try:
            if kill:
                handle.proc.kill()
            else:
                handle.proc.terminate()
        except ProcessLookupError:
            # already gone; the supervisor reports the exit
            log.debug("signal to pid=%s skipped, process already exited", handle.pid)
