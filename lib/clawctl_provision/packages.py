from __future__ import annotations

import re
from typing import Callable

from .errors import EngineInstallError, HostCheckError, PackageInstallError, PrivilegeError
from .models import EngineInfo
from .reporting import Reporter, default_reporter
from .ssh import OutputTail, SSHSession

MARKER_BINARIES = ("curl", "git", "gpg", "sudo")
BASE_PACKAGES = ("curl", "wget", "git", "ca-certificates", "gnupg", "lsb-release", "sudo")
ENGINE_PACKAGES = (
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
)
ENGINE_CHECK_CMD = "docker --version && docker compose version"

_DOCKER_VERSION_RE = re.compile(r"Docker version ([0-9][0-9A-Za-z.+-]*)")
_COMPOSE_VERSION_RE = re.compile(r"Docker Compose version v?([0-9][0-9A-Za-z.+-]*)")

_ENGINE_INSTALL_SCRIPT = r"""
set -e
export DEBIAN_FRONTEND=noninteractive
. /etc/os-release
install -m 0755 -d /etc/apt/keyrings
curl -fsSL "https://download.docker.com/linux/${ID}/gpg" | gpg --batch --yes --dearmor -o /etc/apt/keyrings/docker.gpg
chmod a+r /etc/apt/keyrings/docker.gpg
echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.gpg] https://download.docker.com/linux/${ID} ${VERSION_CODENAME:-$(lsb_release -cs)} stable" > /etc/apt/sources.list.d/docker.list
apt-get update -qq
apt-get install -y -qq {packages}
systemctl start docker
systemctl enable docker
""".strip()


def verify_root(session: SSHSession) -> None:
    res = session.run("id -u")
    if res.returncode != 0 or (res.stdout or "").strip() != "0":
        raise PrivilegeError(
            f"Connected as {session.target.user}, but root is required.",
            details=(res.stderr or "").strip() or None,
        )


def check_host(session: SSHSession, *, reporter: Reporter | None = None) -> None:
    reporter = default_reporter(reporter)
    verify_root(session)
    if session.run("command -v apt-get >/dev/null 2>&1").returncode != 0:
        raise HostCheckError("apt-get is required (Debian/Ubuntu host).")
    reporter.ok("Root access and apt-get available")


def install_base_packages(
        session: SSHSession,
        *,
        reporter: Reporter | None = None,
        echo: Callable[[str], None] | None = None,
) -> bool:
    """Install the base package set. Returns False when it was already present."""
    reporter = default_reporter(reporter)
    check = " && ".join(f"command -v {name} >/dev/null 2>&1" for name in MARKER_BINARIES)
    if session.run(check).returncode == 0:
        reporter.ok("Base packages already installed")
        return False

    reporter.info("Installing base packages...")
    tail = OutputTail(echo)
    cmd = (
        "export DEBIAN_FRONTEND=noninteractive && "
        "apt-get update -qq && "
        f"apt-get install -y -qq {' '.join(BASE_PACKAGES)}"
    )
    code = session.run_streamed(cmd, tail)
    if code != 0:
        raise PackageInstallError("Failed to install base packages", details=tail.text() or None)
    if session.run(check).returncode != 0:
        raise PackageInstallError("Base packages still missing after install")
    reporter.ok("Base packages installed")
    return True


def parse_engine_versions(output: str) -> EngineInfo:
    docker_match = _DOCKER_VERSION_RE.search(output or "")
    compose_match = _COMPOSE_VERSION_RE.search(output or "")
    return EngineInfo(
        version=docker_match.group(1).rstrip(",") if docker_match else "unknown",
        compose_version=compose_match.group(1) if compose_match else "unknown",
    )


def install_container_engine(
        session: SSHSession,
        *,
        reporter: Reporter | None = None,
        echo: Callable[[str], None] | None = None,
) -> EngineInfo:
    reporter = default_reporter(reporter)
    check = session.run(ENGINE_CHECK_CMD)
    if check.returncode == 0:
        info = parse_engine_versions(check.stdout)
        reporter.ok(f"Docker already installed: {info.version}")
        reporter.ok(f"Docker Compose: {info.compose_version}")
        return info

    reporter.info("Installing Docker CE...")
    tail = OutputTail(echo)
    script = _ENGINE_INSTALL_SCRIPT.replace("{packages}", " ".join(ENGINE_PACKAGES))
    code = session.run_streamed(script, tail)
    if code != 0:
        raise EngineInstallError("Failed to install Docker", details=tail.text() or None)

    verify = session.run(ENGINE_CHECK_CMD)
    if verify.returncode != 0:
        raise EngineInstallError(
            "Docker installation verification failed",
            details=(verify.stderr or "").strip() or None,
        )
    info = parse_engine_versions(verify.stdout)
    reporter.ok(f"Docker installed: {info.version}")
    reporter.ok(f"Docker Compose: {info.compose_version}")
    return info
