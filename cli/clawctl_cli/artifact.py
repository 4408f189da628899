from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any

import yaml

from clawctl_provision.models import DeploymentFacts, DeploymentPlan

from .config import cli_version, expand_path, global_instances_dir

ARTIFACT_SUFFIX = ".yml"


class ArtifactError(RuntimeError):
    pass


def build_artifact(
        plan: DeploymentPlan,
        facts: DeploymentFacts,
        *,
        onboarded: bool,
        deployed_at: datetime | None = None,
) -> dict[str, Any]:
    principal = facts.principal
    deployed_at = deployed_at or datetime.now(timezone.utc)
    return {
        "name": plan.instance_name,
        "ip": plan.ip,
        "deployed_at": deployed_at.isoformat().replace("+00:00", "Z"),
        "deployment_method": "clawctl",
        "version": cli_version(),
        "ssh": {
            "key_file": plan.key_path,
            "user": plan.ssh_user,
            "port": plan.ssh_port,
        },
        "docker": {
            "image": facts.image,
            "compose_file": principal.compose_path,
            "branch": facts.branch,
        },
        "deployment": {
            "user": principal.username,
            "uid": principal.uid,
            "gid": principal.gid,
            "home": principal.home,
        },
        "status": {
            "onboardingCompleted": bool(onboarded),
        },
    }


def artifact_path(instance_name: str, instances_dir: str) -> str:
    return os.path.join(instances_dir, f"{instance_name}{ARTIFACT_SUFFIX}")


def write_artifact(data: dict[str, Any], instances_dir: str) -> str:
    path = artifact_path(str(data["name"]), instances_dir)
    try:
        os.makedirs(instances_dir, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)
    except OSError as exc:
        raise ArtifactError(f"Failed to write instance artifact {path}: {exc}") from exc
    return path


def search_dirs(local_dir: str = "./instances") -> list[str]:
    dirs = [expand_path(local_dir)]
    global_dir = global_instances_dir()
    if global_dir not in dirs:
        dirs.append(global_dir)
    return dirs


def find_artifact(instance_name: str, *, local_dir: str = "./instances") -> str | None:
    for directory in search_dirs(local_dir):
        path = artifact_path(instance_name, directory)
        if os.path.isfile(path):
            return path
    return None


def read_artifact(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ArtifactError(f"Failed to read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ArtifactError(f"Malformed instance artifact: {path}")
    return data


def list_artifacts(*, local_dir: str = "./instances") -> list[tuple[str, str]]:
    """Return ``(name, path)`` pairs; a local artifact shadows a global one of the same name."""
    found: dict[str, str] = {}
    for directory in search_dirs(local_dir):
        try:
            entries = sorted(os.listdir(directory))
        except FileNotFoundError:
            continue
        for entry in entries:
            if not entry.endswith(ARTIFACT_SUFFIX):
                continue
            name = entry[: -len(ARTIFACT_SUFFIX)]
            found.setdefault(name, os.path.join(directory, entry))
    return sorted(found.items())


def delete_artifact(instance_name: str, *, local_dir: str = "./instances") -> list[str]:
    removed = []
    for directory in search_dirs(local_dir):
        path = artifact_path(instance_name, directory)
        try:
            os.remove(path)
        except FileNotFoundError:
            continue
        removed.append(path)
    return removed
