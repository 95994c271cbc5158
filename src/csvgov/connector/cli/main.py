"""csvgov CLI - Main entrypoint.

Usage:
    csvgov provision employees.csv
    csvgov sync employees.csv --watch
    csvgov plan
    csvgov mine employees.csv --min-users 3
"""

from __future__ import annotations

import typer

from csvgov.connector.cli.commands import register_commands

app = typer.Typer(
    name="csvgov",
    help="Provision and synchronize Okta identity governance from a CSV file",
    add_completion=True,
)

register_commands(app)


def create_app() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    create_app()
