from __future__ import annotations

import shlex

from .errors import ResetError
from .models import DEPLOY_USER, IMAGE_NAME, LEGACY_IMAGE_NAMES
from .principal import principal_exists
from .reporting import Reporter, default_reporter
from .ssh import SSHSession
from .state import STATE_FILE

LEFTOVER_PATHS = ("/root/docker", "/root/openclaw-build")
LEGACY_STATE_FILES = ("/root/.clawctl-deploy-state.json",)


def reset_summary(username: str = DEPLOY_USER) -> list[str]:
    return [
        "All Docker containers and images",
        f"{username} user and all files",
        "Deployment state",
    ]


def full_reset(
        session: SSHSession,
        *,
        username: str = DEPLOY_USER,
        reporter: Reporter | None = None,
) -> None:
    """Remove every trace of a previous deployment. Not reversible."""
    reporter = default_reporter(reporter)
    reporter.info("Cleaning previous deployment...")

    images = " ".join(shlex.quote(name) for name in (IMAGE_NAME, *LEGACY_IMAGE_NAMES))
    steps = [
        ("Stopped all containers", "docker ps -aq | xargs -r docker stop"),
        ("Removed all containers", "docker ps -aq | xargs -r docker rm"),
        ("Removed application images", f"docker images -q {images} | sort -u | xargs -r docker rmi -f"),
    ]
    for label, cmd in steps:
        res = session.run(cmd)
        if res.returncode != 0:
            # The engine may not be installed yet on a half-provisioned host.
            reporter.warn(f"Skipped ({(res.stderr or '').strip() or 'docker unavailable'}): {cmd}")
        else:
            reporter.ok(label)

    if principal_exists(session, username):
        res = session.run(f"userdel -r {shlex.quote(username)}")
        if principal_exists(session, username):
            raise ResetError(
                f"Failed to remove user '{username}'",
                details=(res.stderr or "").strip() or None,
            )
        reporter.ok(f"Removed user '{username}' and home directory")

    paths = " ".join(shlex.quote(p) for p in (*LEFTOVER_PATHS, STATE_FILE, *LEGACY_STATE_FILES))
    res = session.run(f"rm -rf {paths}")
    if res.returncode != 0:
        raise ResetError("Failed to remove leftover files", details=(res.stderr or "").strip() or None)
    reporter.ok("Cleanup complete")
