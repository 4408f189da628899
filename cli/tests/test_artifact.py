from __future__ import annotations

from datetime import datetime, timezone

import pytest
import yaml

from clawctl_cli import artifact
from clawctl_provision.models import DeploymentFacts

from conftest import PRINCIPAL, make_plan


@pytest.fixture
def dirs(tmp_path, monkeypatch):
    local = tmp_path / "local"
    global_dir = tmp_path / "global"
    monkeypatch.setattr(artifact, "global_instances_dir", lambda: str(global_dir))
    return str(local), str(global_dir)


def _data(name: str, ip: str = "203.0.113.10") -> dict:
    plan = make_plan(instance_name=name, ip=ip)
    facts = DeploymentFacts(principal=PRINCIPAL, image="roboclaw/openclaw:local", branch="main")
    return artifact.build_artifact(
        plan,
        facts,
        onboarded=True,
        deployed_at=datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc),
    )


def test_build_artifact_layout() -> None:
    data = _data("alpha")

    assert list(data) == [
        "name",
        "ip",
        "deployed_at",
        "deployment_method",
        "version",
        "ssh",
        "docker",
        "deployment",
        "status",
    ]
    assert data["deployed_at"] == "2026-05-01T12:00:00Z"
    assert data["docker"] == {
        "image": "roboclaw/openclaw:local",
        "compose_file": "/home/roboclaw/docker/docker-compose.yml",
        "branch": "main",
    }


def test_write_and_read_back(dirs) -> None:
    local, _ = dirs

    path = artifact.write_artifact(_data("alpha"), local)

    assert path.endswith("alpha.yml")
    assert artifact.read_artifact(path)["status"] == {"onboardingCompleted": True}
    with open(path, "r", encoding="utf-8") as f:
        assert f.readline() == "name: alpha\n"


def test_local_artifact_shadows_global(dirs) -> None:
    local, global_dir = dirs
    artifact.write_artifact(_data("alpha", "203.0.113.10"), local)
    artifact.write_artifact(_data("alpha", "198.51.100.7"), global_dir)
    artifact.write_artifact(_data("beta"), global_dir)

    entries = artifact.list_artifacts(local_dir=local)

    assert [name for name, _ in entries] == ["alpha", "beta"]
    assert artifact.read_artifact(artifact.find_artifact("alpha", local_dir=local))["ip"] == "203.0.113.10"


def test_delete_removes_every_copy(dirs) -> None:
    local, global_dir = dirs
    artifact.write_artifact(_data("alpha"), local)
    artifact.write_artifact(_data("alpha"), global_dir)

    removed = artifact.delete_artifact("alpha", local_dir=local)

    assert len(removed) == 2
    assert artifact.find_artifact("alpha", local_dir=local) is None


def test_malformed_artifact(tmp_path) -> None:
    path = tmp_path / "bad.yml"
    path.write_text(yaml.safe_dump(["not", "a", "mapping"]), encoding="utf-8")

    with pytest.raises(artifact.ArtifactError, match="Malformed"):
        artifact.read_artifact(str(path))


def test_write_failure_is_artifact_error(tmp_path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")

    with pytest.raises(artifact.ArtifactError):
        artifact.write_artifact(_data("alpha"), str(blocker / "instances"))
