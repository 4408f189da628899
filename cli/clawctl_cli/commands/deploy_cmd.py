from __future__ import annotations

import time
from typing import Callable

import typer
from rich.prompt import Confirm
from rich.text import Text

from clawctl_provision.errors import InputError, PairingError, ProvisionError, SessionConnectError
from clawctl_provision.models import APP_PORT, TOTAL_PHASES, DeploymentPlan
from clawctl_provision.packages import verify_root
from clawctl_provision.pairing import run_pairing
from clawctl_provision.pipeline import PHASES, DeploymentResult, Phase, ProvisioningPipeline
from clawctl_provision.reset import reset_summary
from clawctl_provision.ssh import SSHSession, SshTarget, build_control_path

from .. import console, exit_codes
from ..artifact import ArtifactError, build_artifact, write_artifact
from ..config import resolve_plan
from ..formatting import ssh_tunnel_hint, token_preview
from ..keys import validate_private_key
from ..logging_ import setup_logging

SessionFactory = Callable[[SshTarget], SSHSession]


def _default_session(target: SshTarget) -> SSHSession:
    return SSHSession(target=target, control_path=build_control_path())


def _phase_banner(phase: Phase, skipped: bool) -> None:
    console.rule(f"[bold]Phase {phase.number}/{TOTAL_PHASES}: {phase.name}[/]")
    if skipped:
        console.dim("  (skip - already complete)")


def _confirm_clean(plan: DeploymentPlan) -> bool:
    console.warn("Clean deployment requested. This will remove:")
    for item in reset_summary():
        console.print(f"  - {item}")
    if plan.assume_yes:
        return True
    confirm = typer.prompt("Type CLEAN to confirm")
    return confirm.strip() == "CLEAN"


def _retry_command(plan: DeploymentPlan) -> str:
    return f"clawctl deploy {plan.ip} --key {plan.key_path}"


def _report_failure(exc: ProvisionError, plan: DeploymentPlan) -> None:
    console.err(f"Deployment failed: {exc}")
    if exc.phase:
        name = next((p.name for p in PHASES if p.number == exc.phase), "")
        console.err(f"Failed at phase {exc.phase}/{TOTAL_PHASES}: {name}")
    if exc.details:
        console.dim(exc.details)
    if exc.phase or isinstance(exc, SessionConnectError):
        console.info("To retry:")
        console.print(f"  {_retry_command(plan)}")
    if exc.phase:
        console.dim("The deployment will resume from the last successful phase.")


def _print_summary(plan: DeploymentPlan, result: DeploymentResult, artifact: str) -> None:
    principal = result.facts.principal
    console.rule("[bold green]Deployment complete[/]")
    console.print(f"  Instance: {plan.instance_name}")
    console.print(f"  IP: {plan.ip}")
    console.print(f"  Dashboard port: {APP_PORT} (loopback only)")
    console.print(f"  Artifact: {artifact}")
    if result.gateway_token:
        console.print(f"  Gateway token: {token_preview(result.gateway_token)}")
    console.print("")
    console.print("  Open the dashboard through an SSH tunnel:")
    console.print(
        "    " + ssh_tunnel_hint(
            plan.ip,
            user=plan.ssh_user,
            port=plan.ssh_port,
            key_path=plan.key_path,
            app_port=APP_PORT,
        )
    )
    console.print(f"    then browse to http://localhost:{APP_PORT}")
    console.print("  Reconnect:")
    console.print(f"    ssh -i {plan.key_path} {plan.ssh_user}@{plan.ip}")
    console.print(f"    sudo -u {principal.username} -i")
    if not result.onboarded:
        console.warn("Onboarding not completed; run the wizard, then start the gateway.")


def _should_auto_connect(plan: DeploymentPlan, result: DeploymentResult) -> bool:
    if plan.auto_connect is False:
        return False
    if not result.onboarded:
        console.dim("Skipping auto-connect (gateway not started)")
        return False
    if plan.auto_connect is None:
        return Confirm.ask(Text("Open the dashboard now?", style="bold"), default=True)
    return True


def run_deploy(
        plan: DeploymentPlan,
        *,
        session_factory: SessionFactory | None = None,
        pairing: Callable[..., object] = run_pairing,
        sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Provision ``plan.ip`` end to end. Returns the process exit code."""
    console.rule("[bold]Preparing to deploy OpenClaw[/]")
    try:
        for warning in validate_private_key(plan.key_path):
            console.warn(warning)
    except InputError as exc:
        console.err(f"SSH key validation failed: {exc}")
        return exit_codes.INVALID_ARGS

    console.print(f"  Target: {plan.ip}")
    console.print(f"  Instance: {plan.instance_name}")
    console.print(f"  SSH User: {plan.ssh_user}")
    console.print(f"  SSH Key: {plan.key_path}")
    console.print(f"  Branch: {plan.branch}")
    if plan.ssh_user != "root":
        console.warn("This tool requires root SSH access to install Docker")

    if plan.clean and not _confirm_clean(plan):
        console.err("Confirmation failed. Aborted.")
        return exit_codes.FAILURE

    target = SshTarget(host=plan.ip, port=plan.ssh_port, user=plan.ssh_user, key_path=plan.key_path)
    session = (session_factory or _default_session)(target)
    try:
        console.info("Connecting to server...")
        session.connect()
        console.ok(f"Connected to {plan.ip} as {plan.ssh_user}")
        verify_root(session)
        console.ok("Root access verified")

        pipeline = ProvisioningPipeline(
            session,
            plan,
            reporter=console,
            echo=console.dim if plan.verbose else None,
            on_phase=_phase_banner,
            sleep=sleep,
        )
        result = pipeline.run()

        artifact = write_artifact(
            build_artifact(plan, result.facts, onboarded=result.onboarded),
            plan.instances_dir,
        )
        console.ok(f"Saved to {artifact}")
        _print_summary(plan, result, artifact)

        if _should_auto_connect(plan, result):
            try:
                pairing(session, result.facts.principal, target, reporter=console)
            except PairingError as exc:
                console.warn(f"Auto-connect failed: {exc}")
            except KeyboardInterrupt:
                console.info("Auto-connect cancelled")
        return exit_codes.OK
    except ProvisionError as exc:
        _report_failure(exc, plan)
        return exit_codes.for_error(exc)
    except ArtifactError as exc:
        console.err(str(exc))
        return exit_codes.ARTIFACT
    except OSError as exc:
        console.err(f"Deployment failed: {exc}")
        return exit_codes.FAILURE
    except KeyboardInterrupt:
        console.warn("Interrupted. Re-run the same command to resume.")
        return 130
    finally:
        session.close()


def deploy(
        ip: str = typer.Argument(..., help="Target server IPv4 address."),
        key: str | None = typer.Option(None, "--key", "-k", help="SSH private key path."),
        name: str | None = typer.Option(None, "--name", "-n", help="Instance name (default: instance-<ip>)."),
        user: str | None = typer.Option(None, "--user", "-u", help="SSH user (default: root)."),
        port: int | None = typer.Option(None, "--port", "-p", help="SSH port (default: 22)."),
        branch: str | None = typer.Option(None, "--branch", "-b", help="OpenClaw git branch (default: main)."),
        skip_onboard: bool = typer.Option(False, "--skip-onboard", help="Skip the onboarding wizard."),
        auto_connect: bool | None = typer.Option(
            None,
            "--auto-connect/--no-auto-connect",
            help="Open the dashboard and approve pairing after deploy (default: ask).",
        ),
        global_: bool = typer.Option(False, "--global", "-g", help="Save the artifact in the global instances dir."),
        force: bool = typer.Option(False, "--force", "-f", help="Ignore partial deployment state and start over."),
        clean: bool = typer.Option(False, "--clean", help="DANGEROUS: remove the previous deployment first."),
        yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for --clean confirmation."),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Stream remote command output."),
):
    """Deploy OpenClaw to a server over root SSH.

    Examples:
      clawctl deploy 203.0.113.10 --key ~/.ssh/id_ed25519
      clawctl deploy 203.0.113.10 -k ~/.ssh/id_ed25519 --skip-onboard --no-auto-connect
    """
    flags = {
        "ssh_key": key,
        "ssh_user": user,
        "ssh_port": port,
        "branch": branch,
        "skip_onboard": True if skip_onboard else None,
        "verbose": True if verbose else None,
    }
    try:
        plan = resolve_plan(
            ip,
            name=name,
            flags=flags,
            auto_connect=auto_connect,
            global_artifact=global_,
            force=force,
            clean=clean,
            assume_yes=yes,
        )
    except InputError as exc:
        console.err(str(exc))
        if exc.details:
            console.dim(exc.details)
        raise typer.Exit(code=exit_codes.INVALID_ARGS)
    if plan.verbose:
        setup_logging(True)
    code = run_deploy(plan)
    if code != exit_codes.OK:
        raise typer.Exit(code=code)
