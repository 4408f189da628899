from __future__ import annotations

import posixpath
import shlex

from .errors import DirectoryError, PrincipalSetupError
from .models import DEPLOY_USER, PREFERRED_UID, PrincipalInfo
from .reporting import Reporter, default_reporter
from .ssh import SSHSession

ENGINE_GROUP = "docker"


def principal_exists(session: SSHSession, username: str = DEPLOY_USER) -> bool:
    return session.run(f"id -u {shlex.quote(username)} >/dev/null 2>&1").returncode == 0


def parse_principal_info(username: str, output: str) -> tuple[PrincipalInfo, list[str]]:
    """Parse the uid, gid, home and group lines printed by ``read_principal_info``."""
    lines = [line.strip() for line in (output or "").splitlines()]
    if len(lines) < 3:
        raise PrincipalSetupError(f"Failed to parse user info for '{username}'")
    try:
        uid = int(lines[0])
        gid = int(lines[1])
    except ValueError as exc:
        raise PrincipalSetupError(f"Failed to parse user info for '{username}'") from exc
    home = lines[2]
    if not home.startswith("/"):
        raise PrincipalSetupError(f"Failed to parse home directory for '{username}'")
    groups = lines[3].split() if len(lines) > 3 else []
    return PrincipalInfo(username=username, uid=uid, gid=gid, home=home), groups


def read_principal_info(session: SSHSession, username: str = DEPLOY_USER) -> tuple[PrincipalInfo, list[str]]:
    user_q = shlex.quote(username)
    cmd = (
        f"id -u {user_q} && id -g {user_q} && "
        f"getent passwd {user_q} | cut -d: -f6 && id -nG {user_q}"
    )
    res = session.run(cmd)
    if res.returncode != 0:
        raise PrincipalSetupError(f"User '{username}' does not exist", details=(res.stderr or "").strip() or None)
    return parse_principal_info(username, res.stdout)


def ensure_principal(
        session: SSHSession,
        *,
        username: str = DEPLOY_USER,
        preferred_uid: int = PREFERRED_UID,
        reporter: Reporter | None = None,
) -> PrincipalInfo:
    """Create the deployment user if needed and return its resolved identity."""
    reporter = default_reporter(reporter)
    user_q = shlex.quote(username)
    if principal_exists(session, username):
        info, groups = read_principal_info(session, username)
        reporter.ok(f"User '{username}' already exists (UID: {info.uid}, GID: {info.gid})")
    else:
        reporter.info(f"Creating user '{username}'...")
        create_cmd = (
            f"useradd -r -m -s /bin/bash -u {int(preferred_uid)} {user_q} 2>/dev/null "
            f"|| useradd -r -m -s /bin/bash {user_q}"
        )
        res = session.run(create_cmd)
        if res.returncode != 0:
            raise PrincipalSetupError(
                f"Failed to create user '{username}'",
                details=(res.stderr or "").strip() or None,
            )
        info, groups = read_principal_info(session, username)
        if info.uid != preferred_uid:
            reporter.warn(f"UID {preferred_uid} is taken, '{username}' got UID {info.uid}")
        reporter.ok(f"Created user '{username}' (UID: {info.uid}, GID: {info.gid})")

    if ENGINE_GROUP not in groups:
        reporter.info(f"Adding '{username}' to {ENGINE_GROUP} group...")
        res = session.run(f"usermod -aG {ENGINE_GROUP} {user_q}")
        if res.returncode != 0:
            raise PrincipalSetupError(
                f"Failed to add '{username}' to the {ENGINE_GROUP} group",
                details=(res.stderr or "").strip() or None,
            )
        _, groups = read_principal_info(session, username)
        if ENGINE_GROUP not in groups:
            raise PrincipalSetupError(f"'{username}' is not in the {ENGINE_GROUP} group after usermod")
        reporter.ok(f"Added '{username}' to {ENGINE_GROUP} group")
    reporter.info(f"Home directory: {info.home}")
    reporter.info(f"Containers will run as: {info.uid}:{info.gid}")
    return info


def managed_directories(principal: PrincipalInfo) -> list[str]:
    return [
        principal.config_dir,
        principal.workspace_dir,
        posixpath.join(principal.data_root, "sessions"),
        principal.credentials_dir,
        posixpath.join(principal.data_root, "data"),
        posixpath.join(principal.data_root, "logs"),
        principal.compose_dir,
        principal.source_dir,
    ]


def _owned_roots(principal: PrincipalInfo) -> list[str]:
    return [principal.config_dir, principal.data_root, principal.compose_dir, principal.source_dir]


def find_directory_problems(session: SSHSession, principal: PrincipalInfo) -> list[str]:
    """Return managed paths that are missing, foreign-owned, or (credentials) too open."""
    dirs = " ".join(shlex.quote(d) for d in managed_directories(principal))
    cred_q = shlex.quote(principal.credentials_dir)
    user_q = shlex.quote(principal.username)
    script = (
        f"for d in {dirs}; do "
        f"if [ ! -d \"$d\" ] || [ \"$(stat -c %U \"$d\")\" != {user_q} ]; then echo \"$d\"; fi; "
        "done; "
        f"if [ -d {cred_q} ] && [ \"$(stat -c %a {cred_q})\" != 700 ]; then echo {cred_q}; fi"
    )
    res = session.run(script)
    if res.returncode != 0:
        raise DirectoryError("Failed to inspect directories", details=(res.stderr or "").strip() or None)
    seen: list[str] = []
    for line in (res.stdout or "").splitlines():
        line = line.strip()
        if line and line not in seen:
            seen.append(line)
    return seen


def ensure_directories(
        session: SSHSession,
        principal: PrincipalInfo,
        *,
        reporter: Reporter | None = None,
) -> bool:
    """Create the directory layout. Returns False when nothing had to change."""
    reporter = default_reporter(reporter)
    problems = find_directory_problems(session, principal)
    if not problems:
        reporter.ok("Directories already in place")
        return False

    reporter.info("Creating directories...")
    mkdir = " ".join(shlex.quote(d) for d in managed_directories(principal))
    roots = " ".join(shlex.quote(d) for d in _owned_roots(principal))
    cmd = (
        f"mkdir -p {mkdir} && "
        f"chown -R {shlex.quote(principal.owner)} {roots} && "
        f"chmod 700 {shlex.quote(principal.credentials_dir)}"
    )
    res = session.run(cmd)
    if res.returncode != 0:
        raise DirectoryError("Failed to create directories", details=(res.stderr or "").strip() or None)
    remaining = find_directory_problems(session, principal)
    if remaining:
        raise DirectoryError("Directory layout incomplete: " + ", ".join(remaining))
    for root in _owned_roots(principal):
        reporter.ok(root)
    reporter.info(f"Ownership: {principal.owner}")
    return True
