from __future__ import annotations

import shlex
from typing import Callable

from .errors import ImageBuildError
from .models import IMAGE_NAME, REPO_URL, PrincipalInfo
from .reporting import Reporter, default_reporter
from .ssh import OutputTail, SSHSession


def image_exists(session: SSHSession, image: str) -> bool:
    res = session.run(f"docker images -q {shlex.quote(image)}")
    return res.returncode == 0 and bool((res.stdout or "").strip())


def image_runs_as(session: SSHSession, image: str, uid: int, gid: int) -> bool:
    """A tagged image is only trusted if it starts and reports the expected uid."""
    res = session.run(f"docker run --rm --user {int(uid)}:{int(gid)} {shlex.quote(image)} id -u")
    if res.returncode != 0:
        return False
    try:
        return int((res.stdout or "").strip().splitlines()[-1]) == uid
    except (ValueError, IndexError):
        return False


def repo_exists(session: SSHSession, repo_path: str) -> bool:
    return session.run(f"test -d {shlex.quote(repo_path + '/.git')}").returncode == 0


def _as_user(username: str, command: str) -> str:
    return f"sudo -u {shlex.quote(username)} {command}"


def sync_source(
        session: SSHSession,
        principal: PrincipalInfo,
        branch: str,
        *,
        repo_url: str = REPO_URL,
        reporter: Reporter | None = None,
        echo: Callable[[str], None] | None = None,
) -> None:
    reporter = default_reporter(reporter)
    repo_path = principal.source_dir
    branch_q = shlex.quote(branch)
    tail = OutputTail(echo)
    if repo_exists(session, repo_path):
        reporter.info("Repository already cloned, updating...")
        cmd = " && ".join(
            [
                _as_user(principal.username, "git fetch origin"),
                _as_user(principal.username, f"git checkout {branch_q}"),
                _as_user(principal.username, f"git reset --hard {shlex.quote('origin/' + branch)}"),
            ]
        )
        code = session.run_streamed(cmd, tail, cwd=repo_path)
    else:
        reporter.info(f"Cloning {repo_url} (branch: {branch})")
        cmd = _as_user(
            principal.username,
            f"git clone --branch {branch_q} {shlex.quote(repo_url)} {shlex.quote(repo_path)}",
        )
        code = session.run_streamed(cmd, tail)
    if code != 0:
        raise ImageBuildError(f"Failed to fetch source (branch: {branch})", details=tail.text() or None)


def ensure_image(
        session: SSHSession,
        principal: PrincipalInfo,
        branch: str,
        *,
        image: str = IMAGE_NAME,
        repo_url: str = REPO_URL,
        reporter: Reporter | None = None,
        echo: Callable[[str], None] | None = None,
) -> str:
    reporter = default_reporter(reporter)
    if image_exists(session, image):
        if image_runs_as(session, image, principal.uid, principal.gid):
            reporter.ok(f"Image already built and verified: {image}")
            return image
        # A crashed build can leave a tagged but unusable image behind.
        reporter.warn("Image exists but failed verification, rebuilding...")
        session.run(f"docker rmi -f {shlex.quote(image)}")

    sync_source(session, principal, branch, repo_url=repo_url, reporter=reporter, echo=echo)

    reporter.info("Building Docker image (this may take several minutes)...")
    tail = OutputTail(echo)
    code = session.run_streamed(f"docker build -t {shlex.quote(image)} .", tail, cwd=principal.source_dir)
    if code != 0:
        raise ImageBuildError("Docker image build failed", details=tail.text() or None)
    if not image_exists(session, image):
        raise ImageBuildError("Image build completed but image not found")
    if not image_runs_as(session, image, principal.uid, principal.gid):
        raise ImageBuildError(f"Built image does not run as UID {principal.uid}")
    reporter.ok(f"Image built: {image}")
    reporter.ok(f"Container verified: runs as UID {principal.uid} (non-root)")
    return image
