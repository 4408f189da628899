from __future__ import annotations

import contextlib
import enum
import functools
import logging
import os
import platform
import re
import shlex
import signal
import subprocess
import sys
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator

from platformdirs import user_cache_dir

from .errors import SessionConnectError, SessionError, SessionStateError, UploadError

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_ATTEMPTS = 3
DEFAULT_CONNECT_TIMEOUT = 30
MAX_BACKOFF_S = 5.0


class SessionState(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class SshTarget:
    host: str
    port: int = 22
    user: str = "root"
    key_path: str | None = None

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host


@dataclass
class SSHSession:
    target: SshTarget
    control_path: str
    state: SessionState = field(default=SessionState.UNAUTHENTICATED, init=False)
    _started: bool = field(default=False, init=False, repr=False)
    _control_master_enabled: bool = field(default=True, init=False, repr=False)

    def __post_init__(self) -> None:
        self._control_master_enabled = supports_control_master()

    def connect(
            self,
            *,
            attempts: int = DEFAULT_CONNECT_ATTEMPTS,
            sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if self.state is SessionState.READY:
            return
        if self.state is SessionState.CLOSED:
            raise SessionStateError("Session already closed.")
        attempts = max(1, int(attempts))
        last_error = ""
        for attempt in range(1, attempts + 1):
            logger.debug("SSH connection attempt %s/%s to %s", attempt, attempts, self.target.destination)
            res = self._handshake()
            if res.returncode == 0:
                self.state = SessionState.READY
                logger.debug("Connected to %s", self.target.host)
                return
            last_error = _decode_stderr(res.stderr or res.stdout) or f"ssh exited with {res.returncode}"
            logger.debug("Connection attempt %s failed: %s", attempt, last_error)
            if attempt < attempts:
                sleep(backoff_delay(attempt))
        raise SessionConnectError(f"SSH connection failed after {attempts} attempts: {last_error}")

    def _handshake(self) -> subprocess.CompletedProcess:
        if not self._control_master_enabled:
            cmd = self._ssh_base_cmd(control_master=False) + [self.target.destination, "true"]
            return _run_local(cmd)
        cmd = self._ssh_base_cmd(control_master=True) + [self.target.destination, "true"]
        res = _run_local(cmd)
        if res.returncode != 0 and _is_control_master_unsupported(_decode_stderr(res.stderr or res.stdout)):
            self._control_master_enabled = False
            cmd = self._ssh_base_cmd(control_master=False) + [self.target.destination, "true"]
            return _run_local(cmd)
        if res.returncode == 0 and not is_windows():
            self._started = True
        return res

    def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        if not self._started:
            return
        self._started = False
        cmd = self._ssh_base_cmd(control_master=False) + ["-O", "exit", self.target.destination]
        try:
            _run_local(cmd)
        except OSError as exc:
            logger.debug("Failed to stop SSH control master: %s", exc)
        else:
            logger.debug("SSH connection closed")

    disconnect = close

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    def _require_ready(self) -> None:
        if self.state is not SessionState.READY:
            raise SessionStateError(f"SSH session is {self.state.value}, not ready.")

    def run(self, command: str, *, cwd: str | None = None) -> subprocess.CompletedProcess:
        """Run a command and buffer its output. A nonzero exit is returned, not raised."""
        self._require_ready()
        remote_cmd = _with_cwd(command, cwd)
        logger.debug("$ %s", remote_cmd)
        cmd = self._ssh_base_cmd(control_master=False) + [self.target.destination, remote_cmd]
        return subprocess.run(
            cmd,
            text=True,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
        )

    def run_input(
            self,
            command: str,
            content: str,
            *,
            log_label: str,
            cwd: str | None = None,
    ) -> subprocess.CompletedProcess:
        self._require_ready()
        remote_cmd = _with_cwd(command, cwd)
        logger.debug("$ %s (%s)", remote_cmd, log_label)
        cmd = self._ssh_base_cmd(control_master=False) + [self.target.destination, remote_cmd]
        return subprocess.run(
            cmd,
            text=True,
            input=content,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
        )

    def run_streamed(
            self,
            command: str,
            sink: Callable[[str], None] | None = None,
            *,
            cwd: str | None = None,
    ) -> int:
        """Run a long command, passing each output line to ``sink``. Returns the exit code."""
        self._require_ready()
        remote_cmd = _with_cwd(command, cwd)
        logger.debug("$ %s", remote_cmd)
        cmd = self._ssh_base_cmd(control_master=False) + [self.target.destination, remote_cmd]
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            raise SessionError(f"Failed to start ssh: {exc}") from exc
        if not proc.stdout:
            raise SessionError("Failed to open ssh output stream.")
        try:
            for line in proc.stdout:
                if sink:
                    sink(line.rstrip("\n"))
        finally:
            proc.stdout.close()
            code = proc.wait()
        return code

    def upload(self, content: str, path: str) -> None:
        """Overwrite ``path`` with ``content``. Ownership and mode are left to the caller."""
        tmp_path = f"{path}.clawctl-tmp"
        command = f"cat > {shlex.quote(tmp_path)} && mv -f {shlex.quote(tmp_path)} {shlex.quote(path)}"
        res = self.run_input(command, content, log_label=f"upload {path}")
        if res.returncode != 0:
            raise UploadError(
                f"Failed to write {path}",
                details=(res.stderr or "").strip() or None,
            )

    def interactive(self, command: str) -> int:
        """Run ``command`` in a remote PTY bound to the local terminal."""
        self._require_ready()
        logger.debug("Running interactive command: %s", command)
        cmd = self._ssh_base_cmd(control_master=False) + ["-tt", self.target.destination, command]
        with terminal_mode_guard():
            try:
                proc = subprocess.Popen(cmd)
            except OSError as exc:
                raise SessionError(f"Failed to start ssh: {exc}") from exc
            with _forward_resize(proc):
                return proc.wait()

    def _ssh_base_cmd(self, *, control_master: bool) -> list[str]:
        cmd = base_ssh_cmd(self.target)
        if not is_windows() and self._control_master_enabled:
            cmd += ["-o", f"ControlPath={self.control_path}"]
            if control_master:
                cmd += ["-o", "ControlMaster=auto", "-o", "ControlPersist=10m"]
        return cmd


def backoff_delay(attempt: int) -> float:
    return min(float(2 ** (attempt - 1)), MAX_BACKOFF_S)


def base_ssh_cmd(target: SshTarget) -> list[str]:
    cmd = [
        "ssh",
        "-p", str(target.port),
        "-o", "BatchMode=yes",
        "-o", "StrictHostKeyChecking=accept-new",
        "-o", f"ConnectTimeout={DEFAULT_CONNECT_TIMEOUT}",
    ]
    if target.key_path:
        cmd += ["-i", target.key_path, "-o", "IdentitiesOnly=yes"]
    return cmd


def tunnel_cmd(target: SshTarget, *, local_port: int, remote_port: int) -> list[str]:
    return base_ssh_cmd(target) + [
        "-N",
        "-o", "ExitOnForwardFailure=yes",
        "-L", f"{local_port}:127.0.0.1:{remote_port}",
        target.destination,
    ]


def build_control_path() -> str:
    base = Path(user_cache_dir("clawctl")) / "ctl"
    base.mkdir(parents=True, exist_ok=True)
    return str(base / "%C")


def is_windows() -> bool:
    return os.name == "nt" or platform.system() == "Windows"


@functools.lru_cache(maxsize=1)
def _ssh_version() -> tuple[int, int] | None:
    try:
        res = subprocess.run(["ssh", "-V"], text=True, capture_output=True)
    except FileNotFoundError:
        return None
    output = (res.stderr or res.stdout or "").strip()
    match = re.search(r"OpenSSH_(\d+)\.(\d+)", output)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def supports_control_master() -> bool:
    if is_windows():
        return False
    version = _ssh_version()
    if version is None:
        return True
    return version >= (4, 0)


def _is_control_master_unsupported(stderr: str) -> bool:
    if not stderr:
        return False
    lowered = stderr.lower()
    return any(
        token in lowered
        for token in (
            "bad configuration option: controlmaster",
            "bad configuration option: controlpersist",
            "bad configuration option: controlpath",
        )
    )


def _decode_stderr(raw: bytes | str | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="ignore").strip()
    return str(raw).strip()


def _with_cwd(command: str, cwd: str | None) -> str:
    if not cwd:
        return command
    return f"cd {shlex.quote(cwd)} && {command}"


def _run_local(cmd: list[str]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, text=True, capture_output=True, stdin=subprocess.DEVNULL)
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(cmd, 255, "", f"{cmd[0]} not found: {exc}")


@contextlib.contextmanager
def terminal_mode_guard(stream=None) -> Iterator[None]:
    """Restore the local terminal attributes on every exit path."""
    stream = stream if stream is not None else sys.stdin
    saved = None
    fd = None
    termios = None
    try:
        import termios as _termios

        fd = stream.fileno()
        if os.isatty(fd):
            termios = _termios
            saved = termios.tcgetattr(fd)
    except (ImportError, AttributeError, OSError, ValueError):
        saved = None
    try:
        yield
    finally:
        if saved is not None and termios is not None:
            try:
                termios.tcsetattr(fd, termios.TCSADRAIN, saved)
            except OSError as exc:
                logger.debug("Failed to restore terminal mode: %s", exc)


@contextlib.contextmanager
def _forward_resize(proc: subprocess.Popen) -> Iterator[None]:
    sigwinch = getattr(signal, "SIGWINCH", None)
    if sigwinch is None:
        yield
        return

    def _handler(_signum, _frame) -> None:
        try:
            proc.send_signal(sigwinch)
        except OSError:
            return

    try:
        previous = signal.signal(sigwinch, _handler)
    except ValueError:
        # Not on the main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(sigwinch, previous)


class OutputTail:
    """Keeps the last lines of streamed output, optionally echoing them."""

    def __init__(self, echo: Callable[[str], None] | None = None, *, limit: int = 20) -> None:
        self._lines: deque[str] = deque(maxlen=limit)
        self._echo = echo

    def __call__(self, line: str) -> None:
        self._lines.append(line)
        if self._echo:
            self._echo(line)

    def text(self) -> str:
        return "\n".join(self._lines)

    def clear(self) -> None:
        self._lines.clear()
