from __future__ import annotations

import json
import logging
import shlex
from typing import Any

from .errors import OnboardingError
from .models import CLI_SERVICE, GATEWAY_SERVICE, PrincipalInfo
from .reporting import Reporter, default_reporter
from .ssh import SSHSession

logger = logging.getLogger(__name__)

TOKEN_PATH = ("gateway", "auth", "token")


def is_onboarded(session: SSHSession, principal: PrincipalInfo) -> bool:
    return session.run(f"test -f {shlex.quote(principal.app_config_path)}").returncode == 0


def onboard_command(principal: PrincipalInfo) -> str:
    return (
        f"cd {shlex.quote(principal.compose_dir)} && "
        f"sudo -u {shlex.quote(principal.username)} "
        f"docker compose run --rm -it {CLI_SERVICE} onboard --no-install-daemon"
    )


def manual_onboarding_steps(principal: PrincipalInfo, host: str) -> list[str]:
    return [
        f"1. SSH to server: ssh root@{host}",
        f"2. Switch to {principal.username}: sudo -u {principal.username} -i",
        f"3. Run onboarding: cd ~/docker && docker compose run --rm -it {CLI_SERVICE} onboard",
        f"4. Start gateway: docker compose up -d {GATEWAY_SERVICE}",
    ]


def run_first_run_setup(
        session: SSHSession,
        principal: PrincipalInfo,
        *,
        skip: bool = False,
        reporter: Reporter | None = None,
) -> bool:
    """Run the onboarding wizard unless already done.

    Returns True when the completion marker exists afterwards and False when
    the operator opted out. The marker, not the wizard's exit status, decides
    success.
    """
    reporter = default_reporter(reporter)
    if is_onboarded(session, principal):
        reporter.ok("Onboarding already completed")
        return True

    if skip:
        reporter.warn("Skipping onboarding wizard (--skip-onboard)")
        reporter.warn("Gateway requires onboarding to be completed first")
        reporter.info("To complete setup:")
        for step in manual_onboarding_steps(principal, session.target.host):
            reporter.info(f"  {step}")
        return False

    reporter.info("Launching onboarding wizard...")
    code = session.interactive(onboard_command(principal))
    if code != 0:
        # Closing the PTY (Ctrl+D) exits nonzero even after a finished wizard.
        logger.debug("Onboarding session exited with %s", code)

    if not is_onboarded(session, principal):
        raise OnboardingError(f"Onboarding did not create {principal.app_config_path}")
    reporter.ok("Onboarding completed")
    return True


def parse_gateway_token(content: str | None) -> str | None:
    if not content:
        return None
    try:
        data: Any = json.loads(content)
    except ValueError:
        logger.debug("Application config is not valid JSON")
        return None
    for key in TOKEN_PATH:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    if isinstance(data, str) and data:
        return data
    return None


def extract_gateway_token(session: SSHSession, principal: PrincipalInfo) -> str | None:
    res = session.run(f"cat {shlex.quote(principal.app_config_path)}")
    if res.returncode != 0:
        return None
    return parse_gateway_token(res.stdout)
