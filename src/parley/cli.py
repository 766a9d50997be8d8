from __future__ import annotations

from pathlib import Path

import anyio
import typer

from . import __version__
from .config import ConfigError
from .logging import get_logger, setup_logging
from .onboarding import check_setup, render_setup_guide
from .telegram.loop import run_bridge

logger = get_logger(__name__)


def _print_version_and_exit() -> None:
    typer.echo(__version__)
    raise typer.Exit()


def _version_callback(value: bool) -> None:
    if value:
        _print_version_and_exit()


def run(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        help="Path to parley.toml (default: ~/.parley/parley.toml).",
    ),
    debug: bool = typer.Option(
        False,
        "--debug/--no-debug",
        help="Log Telegram requests, agent frames, and stream updates.",
    ),
) -> None:
    setup_logging(debug=debug)
    setup = check_setup(config)
    if not setup.ok or setup.settings is None:
        render_setup_guide(setup)
        raise typer.Exit(code=1)
    try:
        anyio.run(run_bridge, setup.settings, setup.config_path)
    except ConfigError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        logger.info("shutdown.interrupted")
        raise typer.Exit(code=130)


def main() -> None:
    typer.run(run)


if __name__ == "__main__":
    main()
