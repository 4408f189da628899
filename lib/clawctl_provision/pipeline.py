from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .compose import update_env_token, upload_compose_files, validate_compose
from .errors import ProvisionError, StateError, VerificationError
from .gateway import is_running, start_service
from .image import ensure_image
from .models import (
    DEPLOY_USER,
    GATEWAY_SERVICE,
    IMAGE_NAME,
    PREFERRED_UID,
    TOTAL_PHASES,
    DeploymentFacts,
    DeploymentPlan,
    PhaseStatus,
    PrincipalInfo,
)
from .onboarding import extract_gateway_token, is_onboarded, run_first_run_setup
from .packages import check_host, install_base_packages, install_container_engine
from .principal import ensure_directories, ensure_principal, read_principal_info
from .reporting import Reporter, default_reporter
from .reset import full_reset
from .ssh import SSHSession
from .state import DeploymentState, StateStore, format_age, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Phase:
    number: int
    name: str
    method: str


PHASES: tuple[Phase, ...] = (
    Phase(1, "Verify Host", "_phase_verify_host"),
    Phase(2, "Install Base Packages", "_phase_base_packages"),
    Phase(3, "Install Docker", "_phase_container_engine"),
    Phase(4, "Setup Deployment User", "_phase_principal"),
    Phase(5, "Create Directories", "_phase_directories"),
    Phase(6, "Build OpenClaw Image", "_phase_image"),
    Phase(7, "Upload Docker Compose", "_phase_compose"),
    Phase(8, "Onboarding", "_phase_first_run_setup"),
    Phase(9, "Start Gateway", "_phase_service_start"),
    Phase(10, "Verify Deployment", "_phase_verify_deployment"),
)


@dataclass(frozen=True)
class DeploymentResult:
    deployment_id: str
    facts: DeploymentFacts
    onboarded: bool
    gateway_token: str | None
    resumed: bool
    executed: tuple[int, ...]


class ProvisioningPipeline:
    """Runs the ten provisioning phases against one session, persisting progress remotely.

    Completed phases are skipped on a later run. Each transition is persisted
    before the next phase starts, except while the principal's home (where
    the state file lives) does not exist yet; those transitions are flushed
    with the first save that succeeds.
    """

    def __init__(
            self,
            session: SSHSession,
            plan: DeploymentPlan,
            *,
            reporter: Reporter | None = None,
            echo: Callable[[str], None] | None = None,
            store: StateStore | None = None,
            on_phase: Callable[[Phase, bool], None] | None = None,
            clock: Callable[[], datetime] = utcnow,
            sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.plan = plan
        self.reporter = default_reporter(reporter)
        self.echo = echo
        self.store = store or StateStore(session)
        self.on_phase = on_phase
        self.clock = clock
        self.sleep = sleep
        self.state: DeploymentState | None = None
        self.resumed = False
        self._principal: PrincipalInfo | None = None
        self._image: str | None = None
        self._onboarded = False
        self._token: str | None = None
        self._executed: list[int] = []

    def prepare(self) -> DeploymentState:
        """Apply reset/force flags and load or create the deployment state."""
        if self.plan.clean:
            self.reporter.warn("Clean deployment requested")
            full_reset(self.session, username=DEPLOY_USER, reporter=self.reporter)
            existing = None
        else:
            existing = self.store.load_partial()
            if existing is not None and self.plan.force:
                self.reporter.warn("Forcing fresh deployment (--force)")
                self.store.delete()
                existing = None

        if existing is None:
            self.state = DeploymentState.new(self.plan.instance_name, branch=self.plan.branch, now=self.clock())
            self.resumed = False
            return self.state

        now = self.clock()
        progress = existing.progress()
        self.reporter.warn("Detected partial deployment on server")
        self.reporter.info(f"  Instance: {existing.instance_name}")
        self.reporter.info(f"  Started: {format_age(existing.age(now))}")
        self.reporter.info(f"  Last phase: {existing.last_phase}")
        self.reporter.info(f"  Progress: {progress.complete}/{progress.total} phases complete")
        if existing.is_stale(now):
            self.reporter.warn("Deployment state is over 24 hours old (use --force to start over)")
        if existing.instance_name != self.plan.instance_name:
            self.reporter.warn(
                f"State belongs to instance '{existing.instance_name}', resuming it as '{self.plan.instance_name}'"
            )
            existing.instance_name = self.plan.instance_name
        self.reporter.info(f"Resuming from phase {existing.next_phase()}/{TOTAL_PHASES}...")

        if existing.is_complete(4):
            self._principal = existing.principal()
        if existing.is_complete(6):
            self._image = existing.metadata.get("image") or IMAGE_NAME
        self.state = existing
        self.resumed = True
        return existing

    def run(self) -> DeploymentResult:
        state = self.state or self.prepare()
        for phase in PHASES:
            if state.is_complete(phase.number):
                if self.on_phase:
                    self.on_phase(phase, True)
                continue
            if self.on_phase:
                self.on_phase(phase, False)
            self._run_phase(state, phase)

        self.store.delete()
        principal = self._require_principal()
        self._onboarded = is_onboarded(self.session, principal)
        if self._onboarded and self._token is None:
            self._token = extract_gateway_token(self.session, principal)
        return DeploymentResult(
            deployment_id=state.deployment_id,
            facts=self.facts,
            onboarded=self._onboarded,
            gateway_token=self._token,
            resumed=self.resumed,
            executed=tuple(self._executed),
        )

    def _run_phase(self, state: DeploymentState, phase: Phase) -> None:
        logger.debug("Phase %s/%s: %s", phase.number, TOTAL_PHASES, phase.name)
        try:
            getattr(self, phase.method)()
        except Exception as exc:
            if isinstance(exc, ProvisionError):
                exc.phase = phase.number
            state.mark(phase.number, PhaseStatus.FAILED)
            self._persist(state)
            raise
        state.mark(phase.number, PhaseStatus.COMPLETE)
        self._executed.append(phase.number)
        self._persist(state)

    def _persist(self, state: DeploymentState) -> None:
        if not self.store.save(state):
            logger.debug("Phase %s recorded in memory only", state.last_phase)

    @property
    def facts(self) -> DeploymentFacts:
        return DeploymentFacts(
            principal=self._require_principal(),
            image=self._image or IMAGE_NAME,
            branch=self.plan.branch,
        )

    def _require_state(self) -> DeploymentState:
        if self.state is None:
            raise StateError("Deployment state not prepared")
        return self.state

    def _require_principal(self) -> PrincipalInfo:
        if self._principal is None:
            # Resumed from a state that recorded phase 4 without its facts.
            self._principal, _ = read_principal_info(self.session, DEPLOY_USER)
            if self.state is not None:
                self.state.record_principal(self._principal)
        return self._principal

    def _phase_verify_host(self) -> None:
        check_host(self.session, reporter=self.reporter)

    def _phase_base_packages(self) -> None:
        install_base_packages(self.session, reporter=self.reporter, echo=self.echo)

    def _phase_container_engine(self) -> None:
        install_container_engine(self.session, reporter=self.reporter, echo=self.echo)

    def _phase_principal(self) -> None:
        principal = ensure_principal(
            self.session,
            username=DEPLOY_USER,
            preferred_uid=PREFERRED_UID,
            reporter=self.reporter,
        )
        self._principal = principal
        self._require_state().record_principal(principal)

    def _phase_directories(self) -> None:
        ensure_directories(self.session, self._require_principal(), reporter=self.reporter)

    def _phase_image(self) -> None:
        image = ensure_image(
            self.session,
            self._require_principal(),
            self.plan.branch,
            image=IMAGE_NAME,
            reporter=self.reporter,
            echo=self.echo,
        )
        self._image = image
        self._require_state().metadata["image"] = image

    def _phase_compose(self) -> None:
        upload_compose_files(
            self.session,
            self._require_principal(),
            self._image or IMAGE_NAME,
            reporter=self.reporter,
        )

    def _phase_first_run_setup(self) -> None:
        principal = self._require_principal()
        self._onboarded = run_first_run_setup(
            self.session,
            principal,
            skip=self.plan.skip_onboard,
            reporter=self.reporter,
        )
        if not self._onboarded:
            return
        token = extract_gateway_token(self.session, principal)
        if token is None:
            self.reporter.warn("No gateway token found in the application config")
            return
        self._token = token
        if update_env_token(self.session, principal, token):
            self.reporter.ok("Updated .env with gateway token")
        else:
            self.reporter.ok("Gateway token already in .env")

    def _phase_service_start(self) -> None:
        principal = self._require_principal()
        if not is_onboarded(self.session, principal):
            self.reporter.warn("Onboarding not completed, gateway not started")
            self.reporter.info(
                f"After onboarding, start it with: cd ~/docker && docker compose up -d {GATEWAY_SERVICE}"
            )
            return
        start_service(self.session, principal, reporter=self.reporter, echo=self.echo, sleep=self.sleep)

    def _phase_verify_deployment(self) -> None:
        principal = self._require_principal()
        if not validate_compose(self.session, principal):
            raise VerificationError("docker compose configuration is invalid")
        if is_onboarded(self.session, principal):
            if not is_running(self.session, principal):
                raise VerificationError(f"{GATEWAY_SERVICE} is not running")
            self.reporter.ok(f"{GATEWAY_SERVICE} is running")
        self.reporter.ok("Deployment verified")
