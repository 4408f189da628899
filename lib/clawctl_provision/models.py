from __future__ import annotations

import enum
import posixpath
from dataclasses import dataclass

DEPLOY_USER = "roboclaw"
PREFERRED_UID = 1000
IMAGE_NAME = "roboclaw/openclaw:local"
LEGACY_IMAGE_NAMES = ("openclaw:local",)
REPO_URL = "https://github.com/openclaw/openclaw.git"
APP_PORT = 18789
GATEWAY_SERVICE = "openclaw-gateway"
CLI_SERVICE = "openclaw-cli"
TOTAL_PHASES = 10


class PhaseStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class DeploymentPlan:
    ip: str
    instance_name: str
    key_path: str
    ssh_user: str = "root"
    ssh_port: int = 22
    branch: str = "main"
    skip_onboard: bool = False
    force: bool = False
    clean: bool = False
    verbose: bool = False
    auto_connect: bool | None = None
    global_artifact: bool = False
    instances_dir: str = "./instances"
    assume_yes: bool = False


@dataclass(frozen=True)
class PrincipalInfo:
    username: str
    uid: int
    gid: int
    home: str

    # Remote paths stay POSIX regardless of the operator's platform.
    @property
    def config_dir(self) -> str:
        return posixpath.join(self.home, ".openclaw")

    @property
    def workspace_dir(self) -> str:
        return posixpath.join(self.config_dir, "workspace")

    @property
    def data_root(self) -> str:
        return posixpath.join(self.home, ".roboclaw")

    @property
    def credentials_dir(self) -> str:
        return posixpath.join(self.data_root, "credentials")

    @property
    def compose_dir(self) -> str:
        return posixpath.join(self.home, "docker")

    @property
    def compose_path(self) -> str:
        return posixpath.join(self.compose_dir, "docker-compose.yml")

    @property
    def env_path(self) -> str:
        return posixpath.join(self.compose_dir, ".env")

    @property
    def source_dir(self) -> str:
        return posixpath.join(self.home, "openclaw-src")

    @property
    def app_config_path(self) -> str:
        return posixpath.join(self.config_dir, "openclaw.json")

    @property
    def owner(self) -> str:
        return f"{self.username}:{self.username}"


@dataclass(frozen=True)
class DeploymentFacts:
    """Facts discovered once and threaded through later phases."""

    principal: PrincipalInfo
    image: str
    branch: str


@dataclass(frozen=True)
class EngineInfo:
    version: str
    compose_version: str


@dataclass(frozen=True)
class PairingRequest:
    request_id: str
    device_id: str
    origin: str
    age: str
