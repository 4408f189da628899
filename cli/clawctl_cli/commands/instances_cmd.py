from __future__ import annotations

import typer
import yaml
from rich.table import Table

from .. import console
from ..artifact import ArtifactError, delete_artifact, find_artifact, list_artifacts, read_artifact
from ..formatting import format_list_timestamp

app = typer.Typer(help="Inspect local instance artifacts written by deploy.")


@app.command("list")
def list_instances(
        instances_dir: str = typer.Option("./instances", "--instances-dir", help="Local instances directory."),
):
    entries = list_artifacts(local_dir=instances_dir)
    if not entries:
        console.info("No instances found.")
        return

    table = Table(title="Instances")
    table.add_column("name", style="bold")
    table.add_column("ip")
    table.add_column("deployed")
    table.add_column("onboarded")
    table.add_column("path", overflow="fold")
    for name, path in entries:
        try:
            data = read_artifact(path)
        except ArtifactError as exc:
            console.warn(str(exc))
            continue
        status = data.get("status") if isinstance(data.get("status"), dict) else {}
        onboarded = status.get("onboardingCompleted")
        table.add_row(
            name,
            str(data.get("ip") or "-"),
            format_list_timestamp(data.get("deployed_at")),
            "yes" if onboarded else "no",
            path,
        )
    console.print(table)


@app.command("show")
def show_instance(
        name: str = typer.Argument(..., help="Instance name."),
        instances_dir: str = typer.Option("./instances", "--instances-dir", help="Local instances directory."),
):
    path = find_artifact(name, local_dir=instances_dir)
    if not path:
        console.err(f"Instance '{name}' not found")
        raise typer.Exit(code=2)
    try:
        data = read_artifact(path)
    except ArtifactError as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)
    console.dim(path)
    console.print(yaml.safe_dump(data, sort_keys=False, default_flow_style=False).rstrip())


@app.command("rm")
def remove_instance(
        name: str = typer.Argument(..., help="Instance name."),
        instances_dir: str = typer.Option("./instances", "--instances-dir", help="Local instances directory."),
        yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Delete the local record only; the server is left untouched."""
    if not find_artifact(name, local_dir=instances_dir):
        console.err(f"Instance '{name}' not found")
        raise typer.Exit(code=2)
    if not yes and not typer.confirm(f"Delete instance record '{name}'?", default=False):
        console.err("Aborted by user.")
        raise typer.Exit(code=1)
    for path in delete_artifact(name, local_dir=instances_dir):
        console.ok(f"Deleted {path}")
