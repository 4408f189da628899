from __future__ import annotations

import os
import shlex

import yaml

from .errors import ComposeUploadError, UploadError
from .models import APP_PORT, CLI_SERVICE, GATEWAY_SERVICE, PrincipalInfo
from .reporting import Reporter, default_reporter
from .ssh import SSHSession

TOKEN_KEY = "OPENCLAW_GATEWAY_TOKEN"
DEFAULT_BIND = "loopback"


def render_compose() -> str:
    """Render the compose file.

    ``${VAR}`` placeholders are left unresolved; docker compose substitutes
    them from the companion ``.env`` at start time.
    """
    common_env = {
        "HOME": "/home/node",
        "TERM": "xterm-256color",
        TOKEN_KEY: "${" + TOKEN_KEY + "}",
    }
    volumes = [
        "${OPENCLAW_CONFIG_DIR}:/home/node/.openclaw",
        "${OPENCLAW_WORKSPACE_DIR}:/home/node/.openclaw/workspace",
    ]
    compose = {
        "services": {
            GATEWAY_SERVICE: {
                "image": "${OPENCLAW_IMAGE:-openclaw:local}",
                "user": "${DEPLOY_UID}:${DEPLOY_GID}",
                "environment": dict(common_env),
                "volumes": list(volumes),
                "ports": [f"127.0.0.1:${{OPENCLAW_GATEWAY_PORT:-{APP_PORT}}}:{APP_PORT}"],
                "init": True,
                "restart": "unless-stopped",
                "command": [
                    "node",
                    "dist/index.js",
                    "gateway",
                    "--bind",
                    "${OPENCLAW_GATEWAY_BIND:-loopback}",
                    "--port",
                    str(APP_PORT),
                ],
            },
            CLI_SERVICE: {
                "image": "${OPENCLAW_IMAGE:-openclaw:local}",
                "user": "${DEPLOY_UID}:${DEPLOY_GID}",
                "environment": {**common_env, "BROWSER": "echo"},
                "volumes": list(volumes),
                "stdin_open": True,
                "tty": True,
                "init": True,
                "entrypoint": ["node", "dist/index.js"],
            },
        }
    }
    dumped = yaml.safe_dump(compose, sort_keys=False, default_flow_style=False)
    return dumped if dumped.endswith("\n") else dumped + "\n"


def render_env(
        principal: PrincipalInfo,
        image: str,
        *,
        token: str,
        port: int = APP_PORT,
        bind: str = DEFAULT_BIND,
) -> str:
    lines = [
        f"OPENCLAW_IMAGE={image}",
        f"OPENCLAW_CONFIG_DIR={principal.config_dir}",
        f"OPENCLAW_WORKSPACE_DIR={principal.workspace_dir}",
        f"OPENCLAW_GATEWAY_PORT={port}",
        f"OPENCLAW_GATEWAY_BIND={bind}",
        f"{TOKEN_KEY}={token}",
        f"DEPLOY_USER={principal.username}",
        f"DEPLOY_UID={principal.uid}",
        f"DEPLOY_GID={principal.gid}",
        f"DEPLOY_HOME={principal.home}",
    ]
    return "\n".join(lines) + "\n"


def read_env_content(content: str) -> dict[str, str]:
    data: dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        data[key.strip()] = value.strip()
    return data


def generate_gateway_token() -> str:
    return os.urandom(32).hex()


def read_remote_file(session: SSHSession, path: str) -> str | None:
    res = session.run(f"cat {shlex.quote(path)} 2>/dev/null")
    if res.returncode != 0:
        return None
    return res.stdout or ""


def _write_owned(session: SSHSession, principal: PrincipalInfo, path: str, content: str, *, mode: str) -> None:
    try:
        session.upload(content, path)
    except UploadError as exc:
        raise ComposeUploadError(str(exc), details=exc.details) from exc
    res = session.run(f"chown {shlex.quote(principal.owner)} {shlex.quote(path)} && chmod {mode} {shlex.quote(path)}")
    if res.returncode != 0:
        raise ComposeUploadError(
            f"Failed to set ownership of {path}",
            details=(res.stderr or "").strip() or None,
        )


def validate_compose(session: SSHSession, principal: PrincipalInfo) -> bool:
    res = session.run("docker compose config -q", cwd=principal.compose_dir)
    return res.returncode == 0


def upload_compose_files(
        session: SSHSession,
        principal: PrincipalInfo,
        image: str,
        *,
        reporter: Reporter | None = None,
) -> bool:
    """Write the compose file and ``.env``. Returns False when both were already current."""
    reporter = default_reporter(reporter)
    compose_content = render_compose()
    existing_compose = read_remote_file(session, principal.compose_path)
    existing_env = read_remote_file(session, principal.env_path)
    token = read_env_content(existing_env or "").get(TOKEN_KEY) or generate_gateway_token()
    env_content = render_env(principal, image, token=token)

    if existing_compose == compose_content and existing_env == env_content:
        reporter.ok("Compose files already up to date")
        return False

    reporter.info("Generating Docker Compose files...")
    _write_owned(session, principal, principal.compose_path, compose_content, mode="644")
    reporter.ok(f"Uploaded {principal.compose_path}")
    _write_owned(session, principal, principal.env_path, env_content, mode="600")
    reporter.ok(f"Uploaded {principal.env_path}")

    if not validate_compose(session, principal):
        raise ComposeUploadError("docker compose rejected the generated configuration")
    reporter.info(f"Ownership: {principal.owner}")
    return True


def update_env_token(session: SSHSession, principal: PrincipalInfo, token: str) -> bool:
    """Store ``token`` in the remote ``.env``. Returns False when it was already there."""
    content = read_remote_file(session, principal.env_path)
    if content is None:
        raise ComposeUploadError(f"{principal.env_path} is missing")
    if read_env_content(content).get(TOKEN_KEY) == token:
        return False
    lines = []
    replaced = False
    for raw in content.splitlines():
        if raw.strip().startswith(f"{TOKEN_KEY}="):
            lines.append(f"{TOKEN_KEY}={token}")
            replaced = True
        else:
            lines.append(raw)
    if not replaced:
        lines.append(f"{TOKEN_KEY}={token}")
    _write_owned(session, principal, principal.env_path, "\n".join(lines) + "\n", mode="600")
    return True
