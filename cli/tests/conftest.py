from __future__ import annotations

import json
import posixpath
import re
import subprocess

import pytest

from clawctl_provision.errors import UploadError
from clawctl_provision.models import DeploymentPlan, PrincipalInfo
from clawctl_provision.pipeline import ProvisioningPipeline
from clawctl_provision.ssh import SshTarget

HOME = "/home/roboclaw"
STATE_PATH = f"{HOME}/.clawctl-deploy-state.json"
APP_CONFIG = f"{HOME}/.openclaw/openclaw.json"
GATEWAY_TOKEN = "f3" * 24

_USER_RE = re.compile(r"--user (\d+):(\d+)")


def completed(code: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess([], code, stdout, stderr)


class FakeHost:
    """In-memory Debian host that answers the commands the provisioning steps send.

    Every command that changes the host is appended to ``mutations``; writes
    of the deployment state file are counted in ``state_writes`` instead.
    """

    def __init__(self, host: str = "203.0.113.10") -> None:
        self.target = SshTarget(host=host, key_path="/keys/id_ed25519")
        self.root = True
        self.apt = True
        self.base_installed = False
        self.engine_installed = False
        self.user_exists = False
        self.uid = 1000
        self.gid = 1000
        self.in_docker_group = False
        self.dirs_ok = False
        self.repo_cloned = False
        self.image_built = False
        self.image_runs = True
        self.gateway_running = False
        self.listening = True
        self.wizard_completes = True
        self.wizard_exit_code = 0
        self.files: dict[str, str] = {}
        self.commands: list[str] = []
        self.mutations: list[str] = []
        self.state_writes = 0
        self.fail_on: dict[str, int] = {}
        self.connect_error: Exception | None = None
        self.connected = False
        self.closed = False

    def connect(self, **_kwargs) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def close(self) -> None:
        self.closed = True

    disconnect = close

    def reset_log(self) -> None:
        self.commands.clear()
        self.mutations.clear()
        self.state_writes = 0

    def _forced_failure(self, command: str) -> int | None:
        for marker, code in self.fail_on.items():
            if marker in command:
                return code
        return None

    def run(self, command: str, *, cwd: str | None = None) -> subprocess.CompletedProcess:
        self.commands.append(command)
        code = self._forced_failure(command)
        if code is not None:
            return completed(code, "", f"forced failure: {command}")
        return self._dispatch(command)

    def run_streamed(self, command: str, sink=None, *, cwd: str | None = None) -> int:
        res = self.run(command, cwd=cwd)
        if sink:
            for line in (res.stdout + res.stderr).splitlines():
                sink(line)
        return res.returncode

    def upload(self, content: str, path: str) -> None:
        self.commands.append(f"upload {path}")
        if self._forced_failure(f"upload {path}") is not None:
            raise UploadError(f"Failed to write {path}")
        if path == STATE_PATH:
            self.state_writes += 1
        else:
            self.mutations.append(f"upload {path}")
        self.files[path] = content

    def interactive(self, command: str) -> int:
        self.commands.append(command)
        if self.wizard_completes:
            self.files[APP_CONFIG] = json.dumps({"gateway": {"auth": {"token": GATEWAY_TOKEN}}})
        return self.wizard_exit_code

    def state(self) -> dict | None:
        raw = self.files.get(STATE_PATH)
        return json.loads(raw) if raw else None

    def _remove_user(self) -> None:
        self.user_exists = False
        self.in_docker_group = False
        self.dirs_ok = False
        self.repo_cloned = False
        for path in list(self.files):
            if path.startswith(HOME + "/"):
                del self.files[path]

    def _dispatch(self, command: str) -> subprocess.CompletedProcess:
        if command == "id -u":
            return completed(0, "0\n" if self.root else "1000\n")
        if command == "command -v apt-get >/dev/null 2>&1":
            return completed(0 if self.apt else 1)
        if command.startswith("command -v curl"):
            return completed(0 if self.base_installed else 1)
        if "apt-get install -y -qq curl" in command:
            self.base_installed = True
            self.mutations.append("apt install")
            return completed(0, "Setting up curl ...\n")
        if command == "docker --version && docker compose version":
            if not self.engine_installed:
                return completed(127, "", "docker: command not found")
            return completed(0, "Docker version 27.1.1, build 6312585\nDocker Compose version v2.29.1\n")
        if "download.docker.com" in command:
            self.engine_installed = True
            self.mutations.append("engine install")
            return completed(0, "Setting up docker-ce ...\n")

        if "getent passwd roboclaw" in command:
            if not self.user_exists:
                return completed(1, "", "id: 'roboclaw': no such user")
            groups = "roboclaw docker" if self.in_docker_group else "roboclaw"
            return completed(0, f"{self.uid}\n{self.gid}\n{HOME}\n{groups}\n")
        if command == "id -u roboclaw >/dev/null 2>&1":
            return completed(0 if self.user_exists else 1)
        if command.startswith("useradd"):
            self.user_exists = True
            self.mutations.append("useradd")
            return completed(0)
        if command.startswith("usermod -aG docker"):
            self.in_docker_group = True
            self.mutations.append("usermod")
            return completed(0)
        if command.startswith("for d in"):
            return completed(0, "" if self.dirs_ok else f"{HOME}/.openclaw\n{HOME}/docker\n")
        if command.startswith("mkdir -p"):
            self.dirs_ok = True
            self.mutations.append("mkdir")
            return completed(0)

        if "xargs -r docker stop" in command:
            self.gateway_running = False
            self.mutations.append("reset: stop containers")
            return completed(0)
        if "xargs -r docker rmi" in command:
            self.image_built = False
            self.mutations.append("reset: remove images")
            return completed(0)
        if "xargs -r docker rm" in command:
            self.mutations.append("reset: remove containers")
            return completed(0)
        if command.startswith("userdel -r"):
            self._remove_user()
            self.mutations.append("userdel")
            return completed(0)
        if command.startswith("rm -rf"):
            for path in command.split()[2:]:
                self.files.pop(path, None)
            self.mutations.append("reset: remove files")
            return completed(0)

        if command.startswith("docker images -q"):
            return completed(0, "3f1c2a9b8d7e\n" if self.image_built else "")
        if command.startswith("docker run --rm --user"):
            match = _USER_RE.search(command)
            if not (self.image_built and self.image_runs and match):
                return completed(125, "", "docker: Error response from daemon")
            return completed(0, f"{match.group(1)}\n")
        if command.startswith("docker rmi -f"):
            self.image_built = False
            self.mutations.append("docker rmi")
            return completed(0)
        if command.startswith("test -d ") and command.endswith("/.git"):
            return completed(0 if self.repo_cloned else 1)
        if "git clone" in command:
            self.repo_cloned = True
            self.mutations.append("git clone")
            return completed(0, "Cloning into 'openclaw-src'...\n")
        if "git fetch origin" in command:
            self.mutations.append("git fetch")
            return completed(0)
        if command.startswith("docker build -t"):
            self.image_built = True
            self.mutations.append("docker build")
            return completed(0, "Successfully tagged roboclaw/openclaw:local\n")

        if command.startswith("cat "):
            path = command.split()[1]
            if path in self.files:
                return completed(0, self.files[path])
            return completed(1, "", f"cat: {path}: No such file or directory")
        if command.startswith("chown "):
            self.mutations.append("chown")
            return completed(0)
        if command.startswith("chmod 600 ") and command.endswith(STATE_PATH):
            return completed(0)
        if command == f"rm -f {STATE_PATH}":
            self.files.pop(STATE_PATH, None)
            return completed(0)
        if command == "docker compose config -q":
            return completed(0 if f"{HOME}/docker/docker-compose.yml" in self.files else 1)
        if command.startswith("test -f "):
            return completed(0 if command.split()[2] in self.files else 1)
        if command.startswith("test -d "):
            path = command.split()[2]
            exists = self.user_exists and (path == HOME or path.startswith(HOME + "/"))
            return completed(0 if exists else 1)

        if "up -d --force-recreate openclaw-gateway" in command:
            self.gateway_running = True
            self.mutations.append("recreate gateway")
            return completed(0, "Container docker-openclaw-gateway-1  Started\n")
        if "grep -q 'listening on'" in command:
            return completed(0 if self.gateway_running and self.listening else 1)
        if "logs --tail" in command:
            return completed(0, "gateway  | starting...\n")
        if "ps --status running -q openclaw-gateway" in command:
            return completed(0, "9a8b7c6d5e4f\n" if self.gateway_running else "")

        raise AssertionError(f"unexpected remote command: {command}")


def make_plan(**overrides) -> DeploymentPlan:
    values = {
        "ip": "203.0.113.10",
        "instance_name": "instance-203-0-113-10",
        "key_path": "/keys/id_ed25519",
        "auto_connect": False,
    }
    values.update(overrides)
    return DeploymentPlan(**values)


def make_pipeline(host: FakeHost, **plan_overrides) -> ProvisioningPipeline:
    return ProvisioningPipeline(host, make_plan(**plan_overrides), sleep=lambda _s: None)


PRINCIPAL = PrincipalInfo(username="roboclaw", uid=1000, gid=1000, home=HOME)


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def principal() -> PrincipalInfo:
    return PRINCIPAL


def remote_path(*parts: str) -> str:
    return posixpath.join(HOME, *parts)
