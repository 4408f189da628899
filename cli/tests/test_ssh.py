import io
import os
import signal
import subprocess

import pytest

from clawctl_provision import ssh
from clawctl_provision.errors import SessionConnectError, SessionError, SessionStateError, UploadError


def _session(monkeypatch: pytest.MonkeyPatch, *, windows: bool = False) -> ssh.SSHSession:
    monkeypatch.setattr(ssh, "is_windows", lambda: windows)
    monkeypatch.setattr(ssh, "supports_control_master", lambda: not windows)
    target = ssh.SshTarget(host="203.0.113.10", key_path="/keys/id_ed25519")
    return ssh.SSHSession(target=target, control_path="/tmp/ctl/%C")


def test_windows_ssh_disables_multiplexing(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _session(monkeypatch, windows=True)

    cmd = session._ssh_base_cmd(control_master=True)

    assert not any("ControlMaster=" in part for part in cmd)
    assert not any("ControlPersist=" in part for part in cmd)
    assert not any("ControlPath=" in part for part in cmd)


def test_non_windows_ssh_uses_multiplexing(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _session(monkeypatch)

    cmd = session._ssh_base_cmd(control_master=True)

    assert "ControlMaster=auto" in cmd
    assert "ControlPersist=10m" in cmd
    assert any("ControlPath=" in part for part in cmd)


def test_base_cmd_uses_key_only_auth() -> None:
    target = ssh.SshTarget(host="203.0.113.10", port=2222, key_path="/keys/id_ed25519")

    cmd = ssh.base_ssh_cmd(target)

    assert cmd[:3] == ["ssh", "-p", "2222"]
    assert "BatchMode=yes" in cmd
    assert "StrictHostKeyChecking=accept-new" in cmd
    assert cmd[cmd.index("-i") + 1] == "/keys/id_ed25519"


def test_tunnel_cmd_forwards_loopback_port() -> None:
    target = ssh.SshTarget(host="203.0.113.10", key_path="/keys/id_ed25519")

    cmd = ssh.tunnel_cmd(target, local_port=18789, remote_port=18789)

    assert "-N" in cmd
    assert cmd[cmd.index("-L") + 1] == "18789:127.0.0.1:18789"
    assert cmd[-1] == "root@203.0.113.10"


def test_backoff_is_capped() -> None:
    assert [ssh.backoff_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_connect_retries_then_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _session(monkeypatch)
    calls = []
    sleeps = []

    def fake_run_local(cmd):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 255, "", "Connection refused")

    monkeypatch.setattr(ssh, "_run_local", fake_run_local)

    with pytest.raises(SessionConnectError, match="after 3 attempts: Connection refused"):
        session.connect(sleep=sleeps.append)

    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]
    assert not session.is_ready


def test_connect_succeeds_on_second_attempt(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _session(monkeypatch)
    codes = iter([255, 0])
    monkeypatch.setattr(
        ssh,
        "_run_local",
        lambda cmd: subprocess.CompletedProcess(cmd, next(codes), "", "timeout"),
    )

    session.connect(sleep=lambda _s: None)

    assert session.is_ready


def test_connect_falls_back_without_control_master(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _session(monkeypatch)
    seen = []

    def fake_run_local(cmd):
        seen.append(cmd)
        if any("ControlMaster=auto" in part for part in cmd):
            return subprocess.CompletedProcess(cmd, 255, "", "Bad configuration option: ControlMaster")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(ssh, "_run_local", fake_run_local)

    session.connect(sleep=lambda _s: None)

    assert session.is_ready
    assert len(seen) == 2
    assert not any("ControlPath=" in part for part in session._ssh_base_cmd(control_master=False))


def test_run_requires_ready_session(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _session(monkeypatch)

    with pytest.raises(SessionStateError):
        session.run("id -u")
    with pytest.raises(SessionStateError):
        session.upload("x", "/tmp/x")


def test_close_is_idempotent_and_blocks_reconnect(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _session(monkeypatch)
    exits = []

    def fake_run_local(cmd):
        if "-O" in cmd:
            exits.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(ssh, "_run_local", fake_run_local)
    session.connect()

    session.close()
    session.close()

    assert len(exits) == 1
    with pytest.raises(SessionStateError):
        session.connect()
    with pytest.raises(SessionStateError):
        session.run("true")


def test_run_prefixes_cwd(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _session(monkeypatch)
    monkeypatch.setattr(ssh, "_run_local", lambda cmd: subprocess.CompletedProcess(cmd, 0, "", ""))
    session.connect()
    captured = {}

    def fake_run(cmd, **kwargs):
        captured["cmd"] = cmd
        return subprocess.CompletedProcess(cmd, 0, "ok\n", "")

    monkeypatch.setattr(ssh.subprocess, "run", fake_run)

    res = session.run("docker compose config -q", cwd="/home/roboclaw/docker")

    assert res.stdout == "ok\n"
    assert captured["cmd"][-1] == "cd /home/roboclaw/docker && docker compose config -q"


def test_output_tail_keeps_last_lines() -> None:
    echoed = []
    tail = ssh.OutputTail(echoed.append, limit=2)

    for line in ("one", "two", "three"):
        tail(line)

    assert tail.text() == "two\nthree"
    assert echoed == ["one", "two", "three"]


def _ready_session(monkeypatch: pytest.MonkeyPatch) -> ssh.SSHSession:
    session = _session(monkeypatch)
    monkeypatch.setattr(ssh, "_run_local", lambda cmd: subprocess.CompletedProcess(cmd, 0, "", ""))
    session.connect()
    return session


class _StreamProc:
    def __init__(self, cmd, output: str, code: int) -> None:
        self.cmd = cmd
        self.stdout = io.StringIO(output)
        self._code = code

    def wait(self) -> int:
        return self._code


def test_upload_writes_through_temp_file(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _ready_session(monkeypatch)
    captured = {}

    def fake_run(cmd, **kwargs):
        captured["cmd"] = cmd
        captured["input"] = kwargs["input"]
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(ssh.subprocess, "run", fake_run)

    session.upload("KEY=value\n", "/home/roboclaw/docker/.env")

    assert captured["input"] == "KEY=value\n"
    assert captured["cmd"][-1] == (
        "cat > /home/roboclaw/docker/.env.clawctl-tmp"
        " && mv -f /home/roboclaw/docker/.env.clawctl-tmp /home/roboclaw/docker/.env"
    )


def test_upload_failure_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _ready_session(monkeypatch)
    monkeypatch.setattr(
        ssh.subprocess,
        "run",
        lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 1, "", "No such file or directory\n"),
    )

    with pytest.raises(UploadError, match="Failed to write /opt/missing/x") as exc_info:
        session.upload("x", "/opt/missing/x")

    assert exc_info.value.details == "No such file or directory"


def test_run_streamed_feeds_lines_and_returns_code(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _ready_session(monkeypatch)
    procs = []

    def fake_popen(cmd, **kwargs):
        proc = _StreamProc(cmd, "Step 1/3\nStep 2/3\n", 3)
        procs.append(proc)
        return proc

    monkeypatch.setattr(ssh.subprocess, "Popen", fake_popen)
    lines = []

    code = session.run_streamed("docker build -t img .", lines.append, cwd="/home/roboclaw/openclaw")

    assert code == 3
    assert lines == ["Step 1/3", "Step 2/3"]
    assert procs[0].cmd[-1] == "cd /home/roboclaw/openclaw && docker build -t img ."
    assert procs[0].stdout.closed


def test_run_streamed_spawn_failure_is_session_error(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _ready_session(monkeypatch)

    def fake_popen(cmd, **kwargs):
        raise FileNotFoundError("ssh")

    monkeypatch.setattr(ssh.subprocess, "Popen", fake_popen)

    with pytest.raises(SessionError, match="Failed to start ssh"):
        session.run_streamed("true")


def test_interactive_requires_ready_session(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _session(monkeypatch)

    with pytest.raises(SessionStateError):
        session.interactive("docker compose run --rm openclaw-cli onboard")


@pytest.mark.skipif(not hasattr(signal, "SIGWINCH"), reason="no SIGWINCH on this platform")
def test_interactive_allocates_tty_and_forwards_resize(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _ready_session(monkeypatch)
    seen = {}

    class FakeProc:
        def __init__(self, cmd) -> None:
            seen["cmd"] = cmd
            seen["signals"] = []

        def send_signal(self, signum) -> None:
            seen["signals"].append(signum)

        def wait(self) -> int:
            handler = signal.getsignal(signal.SIGWINCH)
            handler(signal.SIGWINCH, None)
            return 7

    monkeypatch.setattr(ssh.subprocess, "Popen", FakeProc)
    before = signal.getsignal(signal.SIGWINCH)

    code = session.interactive("onboard")

    assert code == 7
    assert seen["cmd"][-3:] == ["-tt", "root@203.0.113.10", "onboard"]
    assert seen["signals"] == [signal.SIGWINCH]
    assert signal.getsignal(signal.SIGWINCH) == before


class _FdStream:
    def __init__(self, fd: int) -> None:
        self._fd = fd

    def fileno(self) -> int:
        return self._fd


def test_terminal_mode_restored_after_error() -> None:
    pty = pytest.importorskip("pty")
    termios = pytest.importorskip("termios")
    tty = pytest.importorskip("tty")
    master, slave = pty.openpty()
    try:
        stream = _FdStream(slave)
        before = termios.tcgetattr(slave)

        with pytest.raises(RuntimeError):
            with ssh.terminal_mode_guard(stream):
                tty.setraw(slave)
                assert termios.tcgetattr(slave) != before
                raise RuntimeError("wizard crashed")

        assert termios.tcgetattr(slave) == before
    finally:
        os.close(master)
        os.close(slave)


def test_terminal_mode_guard_ignores_non_tty() -> None:
    with ssh.terminal_mode_guard(io.StringIO()):
        pass
