from __future__ import annotations

import shlex
import time
from typing import Callable

from .errors import ServiceStartError
from .models import APP_PORT, GATEWAY_SERVICE, PrincipalInfo
from .polling import PollOutcome, poll_until
from .reporting import Reporter, default_reporter
from .ssh import OutputTail, SSHSession

START_TIMEOUT_S = 30.0
START_INTERVAL_S = 2.0
LISTENING_MARKER = "listening on"
LOG_TAIL_LINES = 20


def _compose(principal: PrincipalInfo, args: str) -> str:
    return f"sudo -u {shlex.quote(principal.username)} docker compose {args}"


def is_listening(session: SSHSession, principal: PrincipalInfo) -> bool:
    cmd = _compose(
        principal,
        f"logs --tail {LOG_TAIL_LINES} {GATEWAY_SERVICE} 2>/dev/null | grep -q {shlex.quote(LISTENING_MARKER)}",
    )
    return session.run(cmd, cwd=principal.compose_dir).returncode == 0


def recent_logs(session: SSHSession, principal: PrincipalInfo) -> str:
    res = session.run(_compose(principal, f"logs --tail {LOG_TAIL_LINES} {GATEWAY_SERVICE}"), cwd=principal.compose_dir)
    return (res.stdout or "").strip()


def is_running(session: SSHSession, principal: PrincipalInfo) -> bool:
    res = session.run(_compose(principal, f"ps --status running -q {GATEWAY_SERVICE}"), cwd=principal.compose_dir)
    return res.returncode == 0 and bool((res.stdout or "").strip())


def start_service(
        session: SSHSession,
        principal: PrincipalInfo,
        *,
        reporter: Reporter | None = None,
        echo: Callable[[str], None] | None = None,
        timeout_s: float = START_TIMEOUT_S,
        interval_s: float = START_INTERVAL_S,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
) -> None:
    """Recreate the gateway container and wait for it to report listening.

    The container is always recreated so it picks up the current compose
    configuration. Log output is the readiness signal; the authenticated
    health endpoint is not usable before onboarding.
    """
    reporter = default_reporter(reporter)
    reporter.info("Starting OpenClaw gateway...")
    tail = OutputTail(echo)
    code = session.run_streamed(
        _compose(principal, f"up -d --force-recreate {GATEWAY_SERVICE}"),
        tail,
        cwd=principal.compose_dir,
    )
    if code != 0:
        raise ServiceStartError("Failed to start gateway", details=tail.text() or None)

    reporter.info("Waiting for gateway to start listening...")
    result = poll_until(
        lambda: is_listening(session, principal),
        timeout_s=timeout_s,
        interval_s=interval_s,
        sleep_first=True,
        clock=clock,
        sleep=sleep,
    )
    if result.outcome is PollOutcome.FAILED:
        raise ServiceStartError(f"Gateway readiness check failed: {result.error}")
    if result.outcome is PollOutcome.TIMED_OUT:
        raise ServiceStartError(
            f"Gateway failed to start within {int(timeout_s)} seconds",
            details=recent_logs(session, principal) or None,
        )
    reporter.ok("Gateway container started")
    reporter.ok(f"Gateway listening on http://localhost:{APP_PORT}")
