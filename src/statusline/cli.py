#!/usr/bin/env python3
"""Statusline CLI - renders the status line and manages its statistics.

Usage:
    echo '{"session_id": ...}' | statusline
    statusline health --json
    statusline db-maint
    statusline hook precompact < hook-input.json
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

from . import __version__
from .context import (
    ContextService,
    burn_rate,
    format_duration,
    format_token_count,
    parse_duration,
    sanitize_for_terminal,
)
from .context.models import CompactionState, ContextUsage
from .core import hook_state
from .core.config import Config
from .core.errors import ConfigError, StatuslineError
from .core.paths import get_config_file, get_data_dir
from .stats import StatsStore

logger = logging.getLogger(__name__)

LOG_LEVELS = [logging.WARNING, logging.INFO, logging.DEBUG]


def _setup_logging(verbose: int) -> None:
    level_name = os.environ.get("STATUSLINE_LOG_LEVEL")
    if level_name:
        level = logging.getLevelName(level_name.upper())
        if not isinstance(level, int):
            level = logging.WARNING
    else:
        level = LOG_LEVELS[min(verbose, len(LOG_LEVELS) - 1)]
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config(config_path: Optional[str]) -> Config:
    try:
        return Config.load(Path(config_path) if config_path else None)
    except ConfigError as e:
        logger.warning(f"Failed to load config: {e}. Using defaults.")
        config = Config()
        config.apply_env_overrides()
        return config


def _read_stdin_json() -> Dict[str, Any]:
    raw = sys.stdin.read()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.warning(f"Invalid JSON on stdin: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def _mapping(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def _shorten_path(path: str) -> str:
    home = str(Path.home())
    if path == home:
        return "~"
    if path.startswith(home + os.sep):
        return "~" + path[len(home):]
    return path


def _format_context(usage: ContextUsage) -> str:
    text = f"{usage.percentage:.0f}%"
    text += f" [{format_token_count(usage.total_tokens)}/{format_token_count(usage.window_size)}]"
    if usage.compaction_state == CompactionState.IN_PROGRESS:
        text += " compacting"
    elif usage.compaction_state == CompactionState.RECENTLY_COMPLETED:
        text += " compacted"
    elif usage.approaching_limit:
        text += " !"
    return text


def render_statusline(data: Dict[str, Any], config: Config, store: StatsStore) -> str:
    """Build the status line for one invocation.

    Stats recording is best-effort: a failing store is logged and the line is
    rendered from whatever data is available.
    """
    workspace = _mapping(data, "workspace")
    cost = _mapping(data, "cost")
    session_id = str(data.get("session_id") or "") or None
    transcript_path = str(data.get("transcript_path") or "") or None
    display_name = _mapping(data, "model").get("display_name")
    model_name = display_name if isinstance(display_name, str) and display_name else None

    usage = None
    if transcript_path:
        service = ContextService(config, store=store)
        usage = service.calculate_usage(transcript_path, model_name=model_name, session_id=session_id)

    lines_added = int(_number(cost.get("total_lines_added")))
    lines_removed = int(_number(cost.get("total_lines_removed")))
    session_cost = cost.get("total_cost_usd")

    if session_id:
        try:
            if session_cost is not None:
                store.record(
                    session_id,
                    _number(session_cost),
                    lines_added,
                    lines_removed,
                    max_tokens=usage.total_tokens if usage else None,
                    model_name=model_name,
                )
            elif usage is not None:
                store.update_max_tokens(session_id, usage.total_tokens, model_name=model_name)
        except StatuslineError as e:
            logger.warning(f"Stats not recorded: {e}")

    duration = None
    if session_id:
        try:
            duration = store.get_session_duration(session_id)
        except StatuslineError as e:
            logger.warning(f"Session duration unavailable: {e}")
    if not duration and transcript_path:
        duration = parse_duration(transcript_path)

    daily_total = 0.0
    try:
        daily_total = store.get_daily_total()
    except StatuslineError as e:
        logger.warning(f"Daily total unavailable: {e}")

    parts: List[str] = []
    directory = str(workspace.get("current_dir") or os.getcwd())
    parts.append(sanitize_for_terminal(_shorten_path(directory)))
    if model_name:
        parts.append(sanitize_for_terminal(model_name))
    if usage is not None:
        parts.append(_format_context(usage))
    if session_cost is not None:
        cost_value = _number(session_cost)
        cost_text = f"${cost_value:.2f}"
        rate = burn_rate(cost_value, duration or 0)
        if rate > 0:
            cost_text += f" (${rate:.2f}/hr)"
        if daily_total > cost_value:
            cost_text += f" (day: ${daily_total:.2f})"
        parts.append(cost_text)
    elif daily_total > 0:
        parts.append(f"day: ${daily_total:.2f}")
    if lines_added or lines_removed:
        parts.append(f"+{lines_added} -{lines_removed}")
    if duration:
        parts.append(format_duration(duration))
    return " • ".join(parts)


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="statusline")
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Path to config.yaml. Defaults to STATUSLINE_CONFIG or the user config dir.",
)
@click.option("--verbose", "-v", count=True, help="Log to stderr (-v info, -vv debug).")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], verbose: int):
    """Statusline - context usage and session statistics.

    With no subcommand, reads the assistant's status JSON on stdin and prints
    one status line.

    \b
    Examples:
        statusline < status.json
        statusline health --json
        statusline db-maint
    """
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config"] = _load_config(config_path)

    if ctx.invoked_subcommand is None:
        config = ctx.obj["config"]
        data = _read_stdin_json()
        with StatsStore(config) as store:
            click.echo(render_statusline(data, config, store))


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output machine-readable JSON.")
@click.pass_context
def health(ctx: click.Context, as_json: bool):
    """Show database location, session count and cost totals."""
    config = ctx.obj["config"]
    try:
        with StatsStore(config) as store:
            report = store.health()
    except StatuslineError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(report, indent=2))
        return

    click.echo(f"Database:      {report['database_path']}")
    click.echo(f"Schema:        v{report['schema_version']}")
    click.echo(f"JSON mirror:   {report['json_path']} ({'on' if report['json_backup'] else 'off'})")
    click.echo(f"Sessions:      {report['session_count']}")
    click.echo(f"All-time cost: ${report['all_time_total']:.2f}")
    click.echo(f"Today:         ${report['today_total']:.2f}")
    click.echo(f"This month:    ${report['month_total']:.2f}")


@main.command("db-maint")
@click.option("--json", "as_json", is_flag=True, help="Output machine-readable JSON.")
@click.pass_context
def db_maint(ctx: click.Context, as_json: bool):
    """Apply retention pruning and check database integrity."""
    config = ctx.obj["config"]
    try:
        with StatsStore(config) as store:
            result = store.maintenance()
    except StatuslineError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(result, indent=2))
    else:
        pruned = result["pruned"]
        click.echo(
            f"Pruned {pruned['sessions']} session(s), {pruned['daily']} day(s), "
            f"{pruned['monthly']} month(s)"
        )
        click.echo(f"Integrity: {'ok' if result['integrity_ok'] else 'FAILED'}")
    if not result["integrity_ok"]:
        sys.exit(1)


@main.command("reset-learning")
@click.option("--model", default=None, help="Only forget this model's learned window.")
@click.pass_context
def reset_learning(ctx: click.Context, model: Optional[str]):
    """Forget learned context windows."""
    config = ctx.obj["config"]
    try:
        with StatsStore(config) as store:
            removed = store.learner().reset(model)
    except StatuslineError as e:
        raise click.ClickException(str(e))
    click.echo(f"Removed {removed} learned window(s)")


@main.command("config-path")
def config_path_cmd():
    """Print the config file and data directory locations."""
    click.echo(f"Config: {Config.find_config_file() or get_config_file()}")
    click.echo(f"Data:   {get_data_dir()}")


@main.group()
def hook():
    """Commands run from the assistant's hooks (read hook JSON on stdin)."""
    pass


@hook.command()
def precompact():
    """Mark the session as compacting (PreCompact hook)."""
    data = _read_stdin_json()
    session_id = data.get("session_id")
    if not session_id:
        raise click.ClickException("Hook input has no session_id")
    try:
        hook_state.write_state(session_id, trigger=str(data.get("trigger") or "auto"))
    except StatuslineError as e:
        raise click.ClickException(str(e))


@hook.command()
def stop():
    """Clear the session's compacting state (Stop/SessionStart hook)."""
    data = _read_stdin_json()
    session_id = data.get("session_id")
    if not session_id:
        raise click.ClickException("Hook input has no session_id")
    try:
        hook_state.clear_state(session_id)
    except StatuslineError as e:
        raise click.ClickException(str(e))


if __name__ == "__main__":
    main()
