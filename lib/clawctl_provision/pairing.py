from __future__ import annotations

import json
import logging
import platform
import re
import shlex
import subprocess
import time
from typing import Any, Callable, Iterable

import httpx

from .errors import PairingError
from .models import APP_PORT, GATEWAY_SERVICE, PairingRequest, PrincipalInfo
from .polling import PollOutcome, PollResult, poll_until
from .reporting import Reporter, default_reporter
from .ssh import SSHSession, SshTarget, tunnel_cmd

logger = logging.getLogger(__name__)

PAIRING_TIMEOUT_S = 60.0
PAIRING_INTERVAL_S = 2.0
TUNNEL_GRACE_S = 2.0

_REQUEST_ID_RE = re.compile(r"^[0-9a-f-]{36}$")
_TABLE_BORDER = "│"


def devices_command(principal: PrincipalInfo, args: str, *, tty: bool = False) -> str:
    exec_flags = "" if tty else "-T "
    return (
        f"sudo -u {shlex.quote(principal.username)} docker compose exec {exec_flags}"
        f"{GATEWAY_SERVICE} node dist/index.js devices {args}"
    )


def _first(item: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return str(value)
    return ""


def parse_pending_json(output: str) -> list[PairingRequest] | None:
    """Parse ``devices list --json``. Returns None when the output is not JSON."""
    try:
        data = json.loads(output)
    except ValueError:
        return None
    if isinstance(data, dict):
        data = data.get("pending", [])
    if not isinstance(data, list):
        return None
    requests = []
    for item in data:
        if not isinstance(item, dict):
            continue
        request_id = _first(item, "requestId", "request_id", "id")
        if not request_id:
            continue
        requests.append(
            PairingRequest(
                request_id=request_id,
                device_id=_first(item, "deviceId", "device_id"),
                origin=_first(item, "ip", "origin", "remoteIp"),
                age=_first(item, "age", "createdAt", "created_at"),
            )
        )
    return requests


def parse_pending_table(output: str) -> list[PairingRequest]:
    """Parse the box-drawn table printed by ``devices list``.

    Only rows of the ``Pending (N)`` section are returned. Columns are
    request id, device id, role, origin, age.
    """
    requests = []
    in_pending = False
    for line in (output or "").splitlines():
        if "Pending (" in line:
            in_pending = True
            continue
        if "Paired (" in line:
            in_pending = False
            continue
        if not in_pending or not line.startswith(_TABLE_BORDER):
            continue
        parts = [part.strip() for part in line.split(_TABLE_BORDER)]
        parts = [part for part in parts if part]
        if len(parts) < 4 or not _REQUEST_ID_RE.match(parts[0]):
            continue
        requests.append(
            PairingRequest(
                request_id=parts[0],
                device_id=parts[1],
                origin=parts[3],
                age=parts[4] if len(parts) > 4 else "",
            )
        )
    return requests


def list_pending_requests(session: SSHSession, principal: PrincipalInfo) -> list[PairingRequest]:
    res = session.run(devices_command(principal, "list --json") + " 2>/dev/null", cwd=principal.compose_dir)
    if res.returncode == 0:
        parsed = parse_pending_json(res.stdout or "")
        if parsed is not None:
            return parsed
    res = session.run(devices_command(principal, "list") + " 2>/dev/null", cwd=principal.compose_dir)
    if res.returncode != 0:
        raise PairingError("Failed to list pairing requests", details=(res.stderr or "").strip() or None)
    return parse_pending_table(res.stdout or "")


def approve_request(session: SSHSession, principal: PrincipalInfo, request_id: str) -> bool:
    res = session.run(
        devices_command(principal, f"approve {shlex.quote(request_id)}"),
        cwd=principal.compose_dir,
    )
    if res.returncode != 0:
        logger.debug("Approval of %s failed: %s", request_id, (res.stderr or "").strip())
    return res.returncode == 0


def first_new_request(requests: Iterable[PairingRequest], baseline: set[str]) -> PairingRequest | None:
    for request in requests:
        if request.request_id not in baseline:
            return request
    return None


def wait_for_new_request(
        session: SSHSession,
        principal: PrincipalInfo,
        baseline: set[str],
        *,
        timeout_s: float = PAIRING_TIMEOUT_S,
        interval_s: float = PAIRING_INTERVAL_S,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    def _check() -> PairingRequest | None:
        try:
            requests = list_pending_requests(session, principal)
        except PairingError as exc:
            # The gateway may still be warming up; keep polling.
            logger.debug("%s", exc)
            return None
        return first_new_request(requests, baseline)

    def _progress(attempt: int, remaining: float) -> None:
        logger.debug("No new pairing request after %s checks, %.0fs left", attempt, remaining)

    return poll_until(
        _check,
        timeout_s=timeout_s,
        interval_s=interval_s,
        on_attempt=_progress,
        sleep=sleep,
        clock=clock,
    )


def open_tunnel(
        target: SshTarget,
        *,
        port: int = APP_PORT,
        grace_s: float = TUNNEL_GRACE_S,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
) -> subprocess.Popen:
    cmd = tunnel_cmd(target, local_port=port, remote_port=port)
    logger.debug("Starting tunnel: %s", " ".join(cmd))
    try:
        proc = popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as exc:
        raise PairingError(f"Failed to start SSH tunnel: {exc}") from exc
    sleep(grace_s)
    if proc.poll() is not None:
        raise PairingError(f"SSH tunnel exited immediately (code {proc.returncode})")
    return proc


def close_tunnel(proc: subprocess.Popen, *, timeout_s: float = 5.0) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout_s)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def browser_command(url: str, system: str | None = None) -> list[str]:
    system = system or platform.system()
    if system == "Darwin":
        return ["open", url]
    if system == "Windows":
        return ["cmd", "/c", "start", "", url]
    return ["xdg-open", url]


def open_browser(url: str, *, popen: Callable[..., subprocess.Popen] = subprocess.Popen) -> bool:
    try:
        popen(
            browser_command(url),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as exc:
        logger.debug("Browser launch failed: %s", exc)
        return False
    return True


def probe_dashboard(url: str, *, timeout_s: float = 5.0) -> int | None:
    try:
        response = httpx.get(url, timeout=timeout_s)
    except httpx.HTTPError as exc:
        logger.debug("Dashboard probe failed: %s", exc)
        return None
    return response.status_code


def manual_approval_steps(principal: PrincipalInfo, target: SshTarget) -> list[str]:
    inner = f"cd {principal.compose_dir} && " + devices_command(principal, "list", tty=True)
    return [
        f"ssh {target.destination} {shlex.quote(inner)}",
        "then approve the request id shown under Pending with 'devices approve <id>'",
    ]


def wait_for_interrupt(proc: subprocess.Popen) -> None:
    try:
        proc.wait()
    except KeyboardInterrupt:
        return


def run_pairing(
        session: SSHSession,
        principal: PrincipalInfo,
        target: SshTarget,
        *,
        reporter: Reporter | None = None,
        port: int = APP_PORT,
        timeout_s: float = PAIRING_TIMEOUT_S,
        interval_s: float = PAIRING_INTERVAL_S,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        hold: Callable[[subprocess.Popen], None] = wait_for_interrupt,
        probe: Callable[[str], int | None] = probe_dashboard,
) -> PairingRequest | None:
    """Tunnel to the dashboard, open it, and approve the first new pairing request.

    Returns the approved request, or None when nothing new arrived or the
    approval call failed. Tunnel failures raise PairingError.
    """
    reporter = default_reporter(reporter)
    reporter.info("Checking existing pairing requests...")
    baseline = {request.request_id for request in list_pending_requests(session, principal)}
    logger.debug("Found %s existing pending requests", len(baseline))

    reporter.info(f"Creating SSH tunnel on port {port}...")
    tunnel = open_tunnel(target, port=port, popen=popen, sleep=sleep)
    reporter.ok(f"Tunnel established (PID {tunnel.pid})")

    url = f"http://localhost:{port}"
    try:
        if open_browser(url, popen=popen):
            reporter.ok("Browser opened")
        else:
            reporter.warn(f"Could not open a browser, open {url} manually")

        reporter.info("Waiting for device pairing request... (Ctrl+C to skip)")
        result = wait_for_new_request(
            session,
            principal,
            baseline,
            timeout_s=timeout_s,
            interval_s=interval_s,
            sleep=sleep,
            clock=clock,
        )
    except BaseException:
        close_tunnel(tunnel)
        raise

    if result.outcome is not PollOutcome.SUCCEEDED:
        if result.outcome is PollOutcome.FAILED:
            reporter.warn(f"Polling for pairing requests failed: {result.error}")
        else:
            reporter.warn(f"No new pairing request detected within {int(timeout_s)} seconds")
        reporter.info("Refresh the browser or approve manually:")
        for step in manual_approval_steps(principal, target):
            reporter.info(f"  {step}")
        close_tunnel(tunnel)
        return None

    request: PairingRequest = result.value
    reporter.ok("New pairing request detected")
    logger.debug("Request ID: %s", request.request_id)
    approved = approve_request(session, principal, request.request_id)
    if approved:
        reporter.ok("Device approved")
        status = probe(url)
        if status is not None:
            reporter.ok(f"Dashboard is ready at {url} (HTTP {status})")
    else:
        reporter.warn("Failed to approve device")

    reporter.info("Tunnel will stay open. Press Ctrl+C to exit.")
    try:
        hold(tunnel)
    finally:
        reporter.info("Closing SSH tunnel...")
        close_tunnel(tunnel)
    return request if approved else None
