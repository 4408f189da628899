from __future__ import annotations

import json
import logging
import posixpath
import shlex
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from .errors import StateError, UploadError
from .models import DEPLOY_USER, IMAGE_NAME, TOTAL_PHASES, PhaseStatus, PrincipalInfo
from .ssh import SSHSession

logger = logging.getLogger(__name__)

STATE_FILE = f"/home/{DEPLOY_USER}/.clawctl-deploy-state.json"
STALE_AFTER = timedelta(hours=24)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(raw: str) -> datetime:
    value = raw.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ProgressSummary:
    total: int
    complete: int
    failed: int
    pending: int


@dataclass
class DeploymentState:
    instance_name: str
    deployment_id: str
    started_at: datetime
    last_phase: int = 0
    phases: dict[int, PhaseStatus] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, instance_name: str, *, branch: str, image: str = IMAGE_NAME, now: datetime | None = None) -> "DeploymentState":
        return cls(
            instance_name=instance_name,
            deployment_id=str(uuid.uuid4()),
            started_at=now or utcnow(),
            phases={n: PhaseStatus.PENDING for n in range(1, TOTAL_PHASES + 1)},
            metadata={
                "deploy_user": DEPLOY_USER,
                "deploy_uid": None,
                "deploy_gid": None,
                "deploy_home": None,
                "image": image,
                "branch": branch,
            },
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentState":
        """Build a state from its JSON form. Raises ValueError on any shape problem."""
        if not isinstance(data, dict):
            raise ValueError("state must be a JSON object")
        try:
            raw_phases = data["phases"]
            phases = {n: PhaseStatus.PENDING for n in range(1, TOTAL_PHASES + 1)}
            for key, status in raw_phases.items():
                number = int(key)
                if 1 <= number <= TOTAL_PHASES:
                    phases[number] = PhaseStatus(status)
            metadata = data.get("metadata") or {}
            if not isinstance(metadata, dict):
                raise ValueError("metadata must be an object")
            return cls(
                instance_name=str(data["instance_name"]),
                deployment_id=str(data["deployment_id"]),
                started_at=_parse_timestamp(str(data["started_at"])),
                last_phase=int(data.get("last_phase") or 0),
                phases=phases,
                metadata=dict(metadata),
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"malformed state: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_name": self.instance_name,
            "deployment_id": self.deployment_id,
            "started_at": self.started_at.isoformat(),
            "last_phase": self.last_phase,
            "phases": {str(n): self.phases[n].value for n in sorted(self.phases)},
            "metadata": dict(self.metadata),
        }

    def mark(self, phase: int, status: PhaseStatus) -> None:
        self.phases[phase] = status
        self.last_phase = phase

    def is_complete(self, phase: int) -> bool:
        return self.phases.get(phase) is PhaseStatus.COMPLETE

    @property
    def all_complete(self) -> bool:
        return all(self.is_complete(n) for n in range(1, TOTAL_PHASES + 1))

    def next_phase(self) -> int:
        for n in range(1, TOTAL_PHASES + 1):
            if not self.is_complete(n):
                return n
        return TOTAL_PHASES + 1

    def progress(self) -> ProgressSummary:
        statuses = [self.phases.get(n, PhaseStatus.PENDING) for n in range(1, TOTAL_PHASES + 1)]
        return ProgressSummary(
            total=TOTAL_PHASES,
            complete=statuses.count(PhaseStatus.COMPLETE),
            failed=statuses.count(PhaseStatus.FAILED),
            pending=statuses.count(PhaseStatus.PENDING),
        )

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or utcnow()) - self.started_at

    def is_stale(self, now: datetime | None = None) -> bool:
        return self.age(now) > STALE_AFTER

    def record_principal(self, principal: PrincipalInfo) -> None:
        self.metadata.update(
            deploy_user=principal.username,
            deploy_uid=principal.uid,
            deploy_gid=principal.gid,
            deploy_home=principal.home,
        )

    def principal(self) -> PrincipalInfo | None:
        """Principal identity captured by an earlier run, if it was recorded."""
        meta = self.metadata
        try:
            uid = int(meta["deploy_uid"])
            gid = int(meta["deploy_gid"])
            home = str(meta["deploy_home"])
            username = str(meta.get("deploy_user") or DEPLOY_USER)
        except (KeyError, TypeError, ValueError):
            return None
        if not home.startswith("/"):
            return None
        return PrincipalInfo(username=username, uid=uid, gid=gid, home=home)


def format_age(age: timedelta) -> str:
    minutes = int(age.total_seconds() // 60)
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days} day{'' if days == 1 else 's'} ago"
    if hours > 0:
        return f"{hours} hour{'' if hours == 1 else 's'} ago"
    if minutes > 0:
        return f"{minutes} minute{'' if minutes == 1 else 's'} ago"
    return "just now"


class StateStore:
    """Reads and writes the deployment state file on the remote host."""

    def __init__(self, session: SSHSession, path: str = STATE_FILE) -> None:
        self.session = session
        self.path = path

    def load(self) -> DeploymentState | None:
        res = self.session.run(f"cat {shlex.quote(self.path)} 2>/dev/null")
        if res.returncode != 0 or not (res.stdout or "").strip():
            logger.debug("No existing deployment state found")
            return None
        try:
            return DeploymentState.from_dict(json.loads(res.stdout))
        except ValueError as exc:
            logger.warning("Ignoring unreadable deployment state at %s: %s", self.path, exc)
            return None

    def load_partial(self) -> DeploymentState | None:
        """Load the state only if it describes an unfinished deployment."""
        state = self.load()
        if state is None or state.all_complete:
            return None
        return state

    def save(self, state: DeploymentState) -> bool:
        """Persist ``state``. Returns False when the state directory does not exist yet."""
        parent = posixpath.dirname(self.path)
        if self.session.run(f"test -d {shlex.quote(parent)}").returncode != 0:
            logger.debug("State directory %s missing, keeping state in memory", parent)
            return False
        content = json.dumps(state.to_dict(), indent=2) + "\n"
        try:
            self.session.upload(content, self.path)
        except UploadError as exc:
            raise StateError("Failed to persist deployment state", details=exc.details or str(exc)) from exc
        self.session.run(f"chmod 600 {shlex.quote(self.path)}")
        logger.debug("Saved deployment state (last phase %s)", state.last_phase)
        return True

    def delete(self) -> None:
        res = self.session.run(f"rm -f {shlex.quote(self.path)}")
        if res.returncode != 0:
            raise StateError("Failed to delete deployment state", details=(res.stderr or "").strip() or None)
        logger.debug("Deleted deployment state file")
