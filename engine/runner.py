from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence

import psutil

from core.cancel import CancellationToken
from engine.parser import strip_ansi

logger = logging.getLogger(__name__)

SPAWN_FAILED = -1
TIMED_OUT = -2

# seconds allowed for terminate before escalating to kill
TEARDOWN_GRACE = 3.0


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


def kill_process_tree(pid: int, grace: float = TEARDOWN_GRACE) -> None:
    """Terminate `pid` and every descendant, children first; never raises."""
    try:
        parent = psutil.Process(pid)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return
    try:
        procs = parent.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        procs = []
    procs.append(parent)

    for proc in procs:
        try:
            proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    _, alive = psutil.wait_procs(procs, timeout=grace)
    for proc in alive:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    if alive:
        psutil.wait_procs(alive, timeout=grace)


class ProcessHandle:
    """Owned handle for one spawned command; cancel() tears down its whole tree."""

    def __init__(self, proc: subprocess.Popen, argv: Sequence[str]):
        self.proc = proc
        self.argv = list(argv)
        self.started = time.time()
        self._cancelled = threading.Event()

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def running(self) -> bool:
        return self.proc.poll() is None

    def cancel(self) -> None:
        self._cancelled.set()
        if self.proc.poll() is None:
            logger.info("killing process tree pid=%s (%s)", self.proc.pid, " ".join(self.argv))
            kill_process_tree(self.proc.pid)
        self._kill_leftovers()

    def _kill_leftovers(self) -> None:
        """Reap descendants that outlived the top-level process and still hold its pipes."""
        if os.name != "nt":
            try:
                os.killpg(self.proc.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                return
            logger.info("killed process group %s", self.proc.pid)
            return
        for proc in psutil.process_iter(["ppid", "create_time"]):
            info = proc.info
            if info.get("ppid") != self.proc.pid or (info.get("create_time") or 0) < self.started:
                continue
            logger.info("killing orphaned pid=%s of %s", proc.pid, self.proc.pid)
            kill_process_tree(proc.pid)

    def wait(self, timeout: float | None = None) -> int | None:
        try:
            return self.proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None


class CommandRunner:
    """
    Runs `foundry` CLI subcommands.

    Every call gets its own ProcessHandle; `current` only remembers the most
    recently started one so `cancel_current()` can reach it. Nothing raises out
    of `run`/`run_streaming`: spawn failures come back as SPAWN_FAILED with the
    exception text in stderr.
    """

    def __init__(
        self,
        executable: str = "foundry",
        prefix: Sequence[str] = (),
        default_timeout: float | None = None,
        log_level: int = logging.INFO,
    ):
        self.executable = executable
        self.log_level = log_level
        self.prefix = list(prefix)
        self.default_timeout = default_timeout
        self._current: ProcessHandle | None = None
        self._current_lock = threading.Lock()

    @property
    def current(self) -> ProcessHandle | None:
        return self._current

    def build_argv(self, args: Sequence[str]) -> list[str]:
        return [*self.prefix, self.executable, *args]

    def start(self, args: Sequence[str]) -> ProcessHandle:
        """Spawn without waiting; raises OSError when the executable is missing."""
        argv = self.build_argv(args)
        # one process group per command; cancel reaches children that outlive the parent
        if os.name == "nt":
            flags = getattr(subprocess, "CREATE_NO_WINDOW", 0) | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            flags = 0
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            creationflags=flags,
            start_new_session=os.name != "nt",
        )
        handle = ProcessHandle(proc, argv)
        with self._current_lock:
            self._current = handle
        return handle

    def cancel_current(self) -> None:
        handle = self._current
        if handle is not None:
            handle.cancel()

    def run(
        self,
        args: Sequence[str],
        token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        argv = self.build_argv(args)
        if token is not None and token.cancelled:
            return CommandResult(SPAWN_FAILED, "", "cancelled before start", cancelled=True)
        timeout = timeout if timeout is not None else self.default_timeout
        self._log_line(f"exec: {' '.join(argv)}")
        try:
            handle = self.start(args)
        except (OSError, ValueError) as exc:
            self._log_line(f"spawn failed: {exc}")
            return CommandResult(SPAWN_FAILED, "", str(exc))

        unregister = token.on_cancel(handle.cancel) if token is not None else (lambda: None)
        try:
            try:
                stdout, stderr = handle.proc.communicate(timeout=timeout)
                exit_code = handle.proc.returncode
            except subprocess.TimeoutExpired:
                self._log_line(f"timeout after {timeout}s: {' '.join(argv)}")
                handle.cancel()
                stdout, stderr = self._drain(handle)
                return CommandResult(TIMED_OUT, strip_ansi(stdout), strip_ansi(stderr) or f"timed out after {timeout}s")
            except (OSError, ValueError) as exc:
                # stream torn down mid-read
                stdout, stderr = "", str(exc)
                exit_code = handle.wait(TEARDOWN_GRACE)
                exit_code = SPAWN_FAILED if exit_code is None else exit_code
        finally:
            unregister()

        cancelled = handle.cancelled or (token is not None and token.cancelled)
        self._log_line(f"exit {exit_code}{' (cancelled)' if cancelled else ''}: {' '.join(argv)}")
        if stdout:
            logger.debug("stdout: %s", stdout.strip())
        if stderr:
            logger.debug("stderr: %s", stderr.strip())
        return CommandResult(exit_code, strip_ansi(stdout), strip_ansi(stderr), cancelled=cancelled)

    def run_streaming(
        self,
        args: Sequence[str],
        on_line: Callable[[str], None],
        token: CancellationToken | None = None,
    ) -> CommandResult:
        """Deliver stdout lines to `on_line` as they arrive; stderr is collected."""
        argv = self.build_argv(args)
        if token is not None and token.cancelled:
            return CommandResult(SPAWN_FAILED, "", "cancelled before start", cancelled=True)
        self._log_line(f"exec (streaming): {' '.join(argv)}")
        try:
            handle = self.start(args)
        except (OSError, ValueError) as exc:
            self._log_line(f"spawn failed: {exc}")
            return CommandResult(SPAWN_FAILED, "", str(exc))

        stderr_chunks: list[str] = []
        stderr_reader = threading.Thread(
            target=self._pump_stderr,
            args=(handle, stderr_chunks),
            name="FoundryStderrReader",
            daemon=True,
        )
        stderr_reader.start()

        unregister = token.on_cancel(handle.cancel) if token is not None else (lambda: None)
        stdout_lines: list[str] = []
        try:
            stream = handle.proc.stdout
            while stream is not None:
                if token is not None and token.cancelled:
                    handle.cancel()
                    break
                try:
                    line = stream.readline()
                except (OSError, ValueError):
                    break
                if not line:
                    break
                line = strip_ansi(line.rstrip("\r\n"))
                stdout_lines.append(line)
                if line.strip():
                    try:
                        on_line(line)
                    except Exception:
                        logger.exception("progress callback failed")
            exit_code = handle.wait(TEARDOWN_GRACE if handle.cancelled else None)
            if exit_code is None:
                handle.cancel()
                exit_code = handle.wait(TEARDOWN_GRACE)
        finally:
            unregister()
            stderr_reader.join(TEARDOWN_GRACE)

        cancelled = handle.cancelled or (token is not None and token.cancelled)
        exit_code = SPAWN_FAILED if exit_code is None else exit_code
        self._log_line(f"exit {exit_code}{' (cancelled)' if cancelled else ''}: {' '.join(argv)}")
        return CommandResult(exit_code, "\n".join(stdout_lines), "".join(stderr_chunks), cancelled=cancelled)

    @staticmethod
    def _drain(handle: ProcessHandle) -> tuple[str, str]:
        try:
            stdout, stderr = handle.proc.communicate(timeout=TEARDOWN_GRACE)
        except (subprocess.TimeoutExpired, OSError, ValueError):
            return "", ""
        return stdout or "", stderr or ""

    @staticmethod
    def _pump_stderr(handle: ProcessHandle, sink: list[str]) -> None:
        stream = handle.proc.stderr
        if stream is None:
            return
        try:
            for chunk in stream:
                sink.append(chunk)
        except (OSError, ValueError):
            pass

    def _log_line(self, message: str) -> None:
        try:
            logger.log(self.log_level, message)
        except Exception:
            pass
