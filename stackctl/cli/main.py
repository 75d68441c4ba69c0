"""CLI entry point.

Interrupts (Ctrl-C) cancel the main task through asyncio.run; the running
command's cleanup (engine stop, lock release) completes before exit.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Sequence

import structlog
from pydantic import ValidationError

from stackctl import __version__
from stackctl.cli.commands import build_root
from stackctl.cli.context import Cli
from stackctl.cli.dispatch import HelpRequest, resolve
from stackctl.cli.help import render_help
from stackctl.cli.ui import GENERIC_ERROR, ConsoleUI
from stackctl.config.settings import get_settings
from stackctl.infra.errors import ReadableError, StackctlError
from stackctl.infra.logging import LogSink, setup_logging

logger = structlog.get_logger()


async def _main(argv: Sequence[str], ui: ConsoleUI) -> int:
    root = build_root()
    resolved = resolve(root, argv)
    sink = LogSink(verbose=resolved.flags.get("verbose") is True)
    setup_logging(sink.writer)
    logger.info("cli_started", version=__version__, argv=list(argv))

    cli: Cli | None = None
    failed = True
    try:
        if isinstance(resolved, HelpRequest):
            logger.info("help_rendered", path=[c.name for c in resolved.path], reason=resolved.reason)
            ui.info(render_help(resolved.path).rstrip("\n"))
            failed = False
            return 0

        try:
            settings = get_settings()
        except ValidationError as e:
            raise ReadableError(f"Invalid configuration: {e}") from e

        cli = Cli(resolved, root=root, settings=settings, sink=sink, ui=ui)
        assert resolved.command.handler is not None
        await resolved.command.handler(cli)
        logger.info("cli_success", command=" ".join(resolved.names))
        failed = False
        return 0
    except StackctlError as e:
        logger.warning("cli_error", code=e.code, error=str(e), exc_info=True)
        if e.code == "INTERNAL_ERROR":
            ui.error(GENERIC_ERROR)
        else:
            ui.error(str(e), e.code)
        return 1
    except Exception:
        logger.exception("cli_unexpected_error")
        ui.error(GENERIC_ERROR)
        return 1
    finally:
        if cli is not None:
            await cli.aclose()
        sink.close(keep=failed)


def run(argv: Sequence[str] | None = None, *, ui: ConsoleUI | None = None) -> int:
    """Run one invocation and return the process exit code."""
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        return asyncio.run(_main(args, ui or ConsoleUI()))
    except KeyboardInterrupt:
        return 1


def main() -> None:
    sys.exit(run())
