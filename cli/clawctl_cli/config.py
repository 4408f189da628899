from __future__ import annotations

import ipaddress
import os
import tomllib
from dataclasses import asdict, dataclass, fields
from importlib import metadata
from typing import Any, Mapping

import tomli_w
from platformdirs import user_config_dir, user_data_dir

from clawctl_provision.errors import InputError
from clawctl_provision.models import DeploymentPlan

from . import console

APP_NAME = "clawctl"
CONFIG_FILENAME = "config.toml"
PROJECT_CONFIG_FILENAME = "clawctl.toml"

ENV_VARS = {
    "CLAWCTL_SSH_KEY": "ssh_key",
    "CLAWCTL_SSH_USER": "ssh_user",
    "CLAWCTL_SSH_PORT": "ssh_port",
    "CLAWCTL_DEFAULT_BRANCH": "branch",
    "CLAWCTL_SKIP_ONBOARD": "skip_onboard",
    "CLAWCTL_INSTANCES_DIR": "instances_dir",
    "CLAWCTL_VERBOSE": "verbose",
}


@dataclass
class Defaults:
    ssh_key: str = ""
    ssh_user: str = "root"
    ssh_port: int = 22
    branch: str = "main"
    skip_onboard: bool = False
    instances_dir: str = "./instances"
    verbose: bool = False


SETTING_KEYS = tuple(f.name for f in fields(Defaults))


def cli_version() -> str:
    try:
        return metadata.version("clawctl")
    except Exception:
        return "0.0.0"


def config_path() -> str:
    return f"{user_config_dir(APP_NAME)}/{CONFIG_FILENAME}"


def project_config_path() -> str:
    return os.path.join(os.getcwd(), PROJECT_CONFIG_FILENAME)


def global_instances_dir() -> str:
    return os.path.join(user_data_dir(APP_NAME), "instances")


def ensure_parent_dir(path: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def coerce_setting(key: str, value: Any) -> Any:
    """Convert a raw setting to its declared type. Raises ValueError for unknown keys or bad values."""
    if key not in SETTING_KEYS:
        raise ValueError(f"Unknown setting: {key}")
    if key == "ssh_port":
        port = int(value)
        if not 1 <= port <= 65535:
            raise ValueError(f"ssh_port out of range: {port}")
        return port
    if key in {"skip_onboard", "verbose"}:
        return parse_bool(value)
    return str(value).strip()


def _clean_table(raw: Any, source: str) -> dict[str, Any]:
    table: dict[str, Any] = {}
    if not isinstance(raw, dict):
        return table
    for key, value in raw.items():
        try:
            table[str(key)] = coerce_setting(str(key), value)
        except ValueError as exc:
            console.warn(f"{source}: {exc}")
    return table


def load_file(path: str) -> dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        return {}
    except tomllib.TOMLDecodeError as exc:
        console.warn(f"Ignoring invalid config {path}: {exc}")
        return {}


def layers_from_file(data: Mapping[str, Any], instance_name: str | None, source: str) -> list[dict[str, Any]]:
    layers = [_clean_table(data.get("defaults"), source)]
    instances = data.get("instances")
    if instance_name and isinstance(instances, dict):
        layers.append(_clean_table(instances.get(instance_name), f"{source} [instances.{instance_name}]"))
    return layers


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for var, key in ENV_VARS.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            values[key] = coerce_setting(key, raw)
        except ValueError as exc:
            console.warn(f"{var}: {exc}")
    return values


def validate_ip(ip: str) -> bool:
    try:
        ipaddress.IPv4Address((ip or "").strip())
    except ValueError:
        return False
    return True


def default_instance_name(ip: str) -> str:
    return "instance-" + ip.replace(".", "-")


def expand_path(path: str) -> str:
    return os.path.abspath(os.path.expanduser(path))


def resolve_settings(
        instance_name: str | None,
        *,
        flags: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
        global_path: str | None = None,
        project_path: str | None = None,
) -> Defaults:
    """Merge settings; later sources win: defaults, global file, project file, env, flags."""
    global_data = load_file(global_path or config_path())
    project_data = load_file(project_path or project_config_path())
    merged = asdict(Defaults())
    for layer in (
            *layers_from_file(global_data, instance_name, "config.toml"),
            *layers_from_file(project_data, instance_name, PROJECT_CONFIG_FILENAME),
            env_overrides(environ),
            {k: v for k, v in (flags or {}).items() if v is not None},
    ):
        merged.update(layer)
    return Defaults(**merged)


def resolve_plan(
        ip: str,
        *,
        name: str | None = None,
        flags: Mapping[str, Any] | None = None,
        auto_connect: bool | None = None,
        global_artifact: bool = False,
        force: bool = False,
        clean: bool = False,
        assume_yes: bool = False,
        environ: Mapping[str, str] | None = None,
        global_path: str | None = None,
        project_path: str | None = None,
) -> DeploymentPlan:
    ip = (ip or "").strip()
    if not validate_ip(ip):
        raise InputError(f"Invalid IP address format: {ip!r}", details="Expected X.X.X.X, e.g. 192.168.1.100")
    instance_name = (name or "").strip() or default_instance_name(ip)
    settings = resolve_settings(
        instance_name,
        flags=flags,
        environ=environ,
        global_path=global_path,
        project_path=project_path,
    )
    if not settings.ssh_key:
        raise InputError("SSH key path is required (use --key or set CLAWCTL_SSH_KEY)")
    instances_dir = global_instances_dir() if global_artifact else expand_path(settings.instances_dir)
    return DeploymentPlan(
        ip=ip,
        instance_name=instance_name,
        key_path=expand_path(settings.ssh_key),
        ssh_user=settings.ssh_user or "root",
        ssh_port=settings.ssh_port,
        branch=settings.branch or "main",
        skip_onboard=settings.skip_onboard,
        force=force,
        clean=clean,
        verbose=settings.verbose,
        auto_connect=auto_connect,
        global_artifact=global_artifact,
        instances_dir=instances_dir,
        assume_yes=assume_yes,
    )


def load_settings_file(path: str | None = None) -> dict[str, Any]:
    data = load_file(path or config_path())
    return {
        "defaults": _clean_table(data.get("defaults"), "config.toml"),
        "instances": {
            str(k): _clean_table(v, f"config.toml [instances.{k}]")
            for k, v in (data.get("instances") or {}).items()
            if isinstance(v, dict)
        },
    }


def save_settings_file(data: Mapping[str, Any], path: str | None = None) -> str:
    path = path or config_path()
    ensure_parent_dir(path)
    payload = {key: value for key, value in data.items() if value}
    with open(path, "wb") as f:
        f.write(tomli_w.dumps(payload).encode("utf-8"))
    os.chmod(path, 0o600)
    return path
