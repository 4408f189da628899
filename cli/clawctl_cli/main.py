from __future__ import annotations

import typer

from .commands import deploy_cmd, instances_cmd, settings_cmd
from .config import cli_version
from .logging_ import setup_logging


def _build_app() -> typer.Typer:
    app = typer.Typer(
        name="clawctl",
        help="Deploy OpenClaw to a root-SSH server with Docker Compose.",
        no_args_is_help=True,
    )

    app.command("deploy")(deploy_cmd.deploy)
    app.add_typer(instances_cmd.app, name="instances")
    app.add_typer(settings_cmd.app, name="settings")

    @app.command("version")
    def version():
        """Print the clawctl version."""
        typer.echo(cli_version())

    @app.callback()
    def _main(
            verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logs."),
    ):
        setup_logging(verbose)

    return app


app = _build_app()
