"""Helpers shared by CLI commands."""

import sys
from typing import NoReturn

import click
from rich.console import Console
from rich.markup import escape

from terrapin.config.models import TerrapinConfig
from terrapin.orchestrator.engine import Engine
from terrapin.utils.errors import EngineError
from terrapin.utils.logging import get_logger

console = Console()
logger = get_logger(__name__)


def get_config(ctx: click.Context) -> TerrapinConfig:
    """Configuration loaded by the top-level group."""
    return ctx.find_root().obj['config']


def get_engine(ctx: click.Context) -> Engine:
    """Engine built from the loaded configuration, created once per invocation."""
    obj = ctx.find_root().obj
    if obj.get('engine') is None:
        try:
            obj['engine'] = Engine.from_config(obj['config'])
        except EngineError as e:
            exit_with_error(e)
        ctx.find_root().call_on_close(obj['engine'].provider.close)
    return obj['engine']


def exit_with_error(error: EngineError) -> NoReturn:
    """Print an engine error and exit with its exit code."""
    console.print(f"[red]{escape(error.to_user_message())}[/red]")
    sys.exit(error.exit_code)


def exit_unexpected(error: Exception, action: str) -> NoReturn:
    logger.exception(f"Unexpected error during {action}")
    console.print(f"[red]Unexpected error:[/red] {escape(str(error))}")
    sys.exit(1)
