from __future__ import annotations

import os

import typer

from .. import console
from ..config import (
    SETTING_KEYS,
    coerce_setting,
    config_path,
    load_settings_file,
    save_settings_file,
)

app = typer.Typer(help="Manage deploy defaults (~/.config/clawctl/config.toml).")


@app.command("init")
def init_settings(
        force: bool = typer.Option(False, "--force", help="Overwrite existing config."),
        ssh_key: str = typer.Option(
            ...,
            "--ssh-key",
            prompt="Default SSH private key path",
            help="SSH private key used when --key is not given.",
        ),
):
    path = config_path()
    if os.path.exists(path) and not force:
        console.info(f"Config already exists: {path}")
        console.info("Use --force to overwrite.")
        return
    if not ssh_key.strip():
        console.err("SSH key path cannot be empty.")
        raise typer.Exit(code=2)
    saved = save_settings_file({"defaults": {"ssh_key": ssh_key.strip()}}, path)
    console.ok(f"Config written: {saved}")


@app.command("show")
def show_settings():
    data = load_settings_file()
    console.dim(config_path())
    defaults = data["defaults"]
    if not defaults and not data["instances"]:
        console.info("No settings configured.")
        return
    for key in SETTING_KEYS:
        if key in defaults:
            console.print(f"{key}={defaults[key]}")
    for name, table in sorted(data["instances"].items()):
        console.print(f"[instances.{name}]", markup=False)
        for key, value in table.items():
            console.print(f"  {key}={value}")


@app.command("get")
def get_setting(
        key: str = typer.Argument(..., help=f"Setting key ({', '.join(SETTING_KEYS)})."),
        instance: str | None = typer.Option(None, "--instance", help="Read an instance override."),
):
    k = key.strip().lower()
    if k not in SETTING_KEYS:
        console.err(f"Unknown setting: {key}")
        raise typer.Exit(code=2)
    data = load_settings_file()
    table = data["instances"].get(instance, {}) if instance else data["defaults"]
    value = table.get(k)
    console.print("-" if value is None else str(value))


@app.command("set")
def set_setting(
        key: str = typer.Argument(..., help=f"Setting key ({', '.join(SETTING_KEYS)})."),
        value: str = typer.Argument(..., help="New value."),
        instance: str | None = typer.Option(None, "--instance", help="Set an override for one instance."),
):
    k = key.strip().lower()
    try:
        coerced = coerce_setting(k, value)
    except ValueError as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)
    data = load_settings_file()
    if instance:
        data["instances"].setdefault(instance, {})[k] = coerced
    else:
        data["defaults"][k] = coerced
    saved = save_settings_file(data)
    console.ok(f"Settings updated: {saved}")
