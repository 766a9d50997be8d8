from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from rich.console import Console
from rich.panel import Panel

from .config import ConfigError, resolve_config_path
from .settings import TOKEN_ENV, ParleySettings, load_settings

_SPEECH = "\N{SPEECH BALLOON}"


@dataclass(slots=True)
class SetupResult:
    config_path: Path
    settings: ParleySettings | None = None
    config_error: str | None = None
    missing_token: bool = False

    @property
    def ok(self) -> bool:
        return self.settings is not None and not self.missing_token


def check_setup(path: str | Path | None = None) -> SetupResult:
    cfg_path = resolve_config_path(path)
    try:
        settings, cfg_path = load_settings(cfg_path)
    except ConfigError as exc:
        return SetupResult(config_path=cfg_path, config_error=str(exc))
    try:
        settings.telegram.resolve_token()
    except ConfigError:
        return SetupResult(config_path=cfg_path, settings=settings, missing_token=True)
    return SetupResult(config_path=cfg_path, settings=settings)


def _config_path_display(path: Path) -> str:
    home = Path.home()
    try:
        return f"~/{path.relative_to(home)}"
    except ValueError:
        return str(path)


def render_setup_guide(result: SetupResult, *, console: Console | None = None) -> None:
    if result.ok:
        return

    console = console or Console(stderr=True)
    parts: list[str] = []
    step = 0

    def add_step(title: str, *lines: str) -> None:
        nonlocal step
        step += 1
        parts.append(f"[bold yellow]{step}.[/] [bold]{title}[/]")
        parts.append("")
        parts.extend(lines)
        parts.append("")

    config_display = _config_path_display(result.config_path)
    if result.config_error is not None:
        add_step(
            "Fix the config",
            f"   [dim]{config_display}[/]",
            "",
            f"   [red]{result.config_error}[/]",
            "",
            "   [cyan]\\[telegram][/]",
            '   [cyan]bot_token[/]  = [green]"123456789:ABCdef..."[/]',
            '   [cyan]dm_policy[/]  = [green]"pairing"[/]',
            '   [cyan]allow_from[/] = [green]["123456789"][/]',
            "",
            "   [cyan]\\[agent][/]",
            '   [cyan]url[/] = [green]"http://127.0.0.1:7437"[/]',
        )

    if result.missing_token or result.config_error is not None:
        add_step(
            "Provide a bot token",
            "   create a bot with [link=https://t.me/BotFather]@BotFather[/], then set",
            f"   [cyan]telegram.bot_token[/] in [dim]{config_display}[/]",
            f"   or export [cyan]{TOKEN_ENV}[/]",
        )

    panel = Panel(
        "\n".join(parts).rstrip(),
        title="[bold]Welcome to parley![/]",
        subtitle=f"{_SPEECH} setup required",
        border_style="yellow",
        padding=(1, 2),
        expand=False,
    )
    console.print(panel)
