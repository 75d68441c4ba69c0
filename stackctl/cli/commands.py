"""Command tree and handlers."""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import shlex
from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from stackctl import __version__
from stackctl.cli.context import Cli
from stackctl.cli.registry import Argument, Command, Description, Example, Flag, FlagKind
from stackctl.cli.ui import ConsoleUI
from stackctl.constants import RESOURCE_ENV_PREFIX
from stackctl.infra.errors import (
    BackendError,
    ReadableError,
    SecretNotFoundError,
    ServerAlreadyRunningError,
    ServerError,
)
from stackctl.server.app import Frame
from stackctl.server.client import request_run, stream_frames
from stackctl.server.coordination import Attached, CoordinationServer
from stackctl.server.protocol import EventFrame, RPCError
from stackctl.stack.channel import EventChannel
from stackctl.stack.events import event_from_dict

logger = structlog.get_logger()


# ── helpers ──────────────────────────────────────────────────────────────────


def resource_env(links: Mapping[str, Any]) -> dict[str, str]:
    """Linked resources as ``STACKCTL_RESOURCE_<name>=<json>`` variables."""
    return {f"{RESOURCE_ENV_PREFIX}{name}": json.dumps(value) for name, value in links.items()}


def split_command(args: Sequence[str]) -> list[str]:
    """``["next dev --turbo"]`` and ``["next", "dev"]`` both become an argv."""
    argv: list[str] = []
    for arg in args:
        argv.extend(shlex.split(arg))
    return argv


async def _run_stack(cli: Cli, command: str) -> None:
    """Run through the project's coordination server if one serves this stage, else locally."""
    ctx = cli.init_project()
    session = CoordinationServer(ctx.project.paths, ctx.key, cli.settings.server).read_session()
    if session is not None and session.stage == ctx.stage:
        try:
            await _run_remote(cli, session.address, command)
            return
        except ServerError as e:
            if e.code != "SERVER_UNREACHABLE":
                raise
            logger.info("server_unreachable", address=session.address)

    lifecycle = await cli.lifecycle()
    channel = EventChannel(cli.settings.server.event_buffer)
    render = asyncio.create_task(cli.ui.follow(channel.subscribe()))
    try:
        await lifecycle.run(command, channel)
    finally:
        if not channel.closed:
            render.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await render


async def _run_with_links(cli: Cli, argv: Sequence[str], extra_env: Mapping[str, str]) -> int:
    ctx = cli.init_project()
    backend = await cli.backend()
    links = await backend.get_links(ctx.key)
    env = {**os.environ, **extra_env, **resource_env(links)}
    try:
        proc = await asyncio.create_subprocess_exec(*argv, env=env)
    except OSError as e:
        raise ReadableError(f"Could not start {argv[0]}: {e}") from e
    logger.info("child_started", argv=list(argv), pid=proc.pid)
    try:
        return await proc.wait()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.terminate()
            await proc.wait()
        raise


def _frame_renderer(ui: ConsoleUI):
    async def render(frame: Frame) -> None:
        if isinstance(frame, EventFrame):
            ui.event(event_from_dict(frame.data))

    return render


async def _run_remote(cli: Cli, address: str, command: str) -> None:
    render = _frame_renderer(cli.ui)
    frames = request_run(address, command, open_timeout=cli.settings.server.connect_timeout_s)
    async with contextlib.aclosing(frames):
        async for frame in frames:
            if isinstance(frame, RPCError):
                raise ServerError(frame.error.message, code=frame.error.code)
            await render(frame)


async def _follow_remote(cli: Cli, address: str) -> None:
    render = _frame_renderer(cli.ui)
    async for frame in stream_frames(address, open_timeout=cli.settings.server.connect_timeout_s):
        await render(frame)
    cli.ui.info("Dev server stopped")


# ── handlers ─────────────────────────────────────────────────────────────────


async def cmd_deploy(cli: Cli) -> None:
    await _run_stack(cli, "up")


async def cmd_remove(cli: Cli) -> None:
    await _run_stack(cli, "destroy")


async def cmd_refresh(cli: Cli) -> None:
    await _run_stack(cli, "refresh")


async def cmd_unlock(cli: Cli) -> None:
    ctx = cli.init_project()
    lifecycle = await cli.lifecycle()
    await lifecycle.cancel()
    cli.ui.info(f"✓  Unlocked the app state for: {ctx.project.name} / {ctx.stage}")


async def _edit(editor: str, path: os.PathLike[str]) -> None:
    argv = [*shlex.split(editor), os.fspath(path)]
    try:
        proc = await asyncio.create_subprocess_exec(*argv)
    except OSError as e:
        raise ReadableError("Could not start editor") from e
    if await proc.wait() != 0:
        raise ReadableError("Editor exited with error")


async def cmd_state_edit(cli: Cli) -> None:
    lifecycle = await cli.lifecycle()
    async with lifecycle.locked():
        try:
            path = await lifecycle.pull_state()
        except BackendError as e:
            raise ReadableError(f"Could not pull state: {e}") from e
        await _edit(cli.settings.editor, path)
        version = await lifecycle.push_state()
    cli.ui.info(f"✓  Pushed state version {version}")


async def cmd_secret_set(cli: Cli) -> None:
    name, value = cli.positional(0), cli.positional(1)
    ctx = cli.init_project()
    backend = await cli.backend()
    try:
        secrets = await backend.get_secrets(ctx.key)
    except BackendError as e:
        raise ReadableError("Could not get secrets") from e
    secrets[name] = value
    try:
        await backend.put_secrets(ctx.key, secrets)
    except BackendError as e:
        raise ReadableError("Could not set secret") from e
    cli.ui.info(f'✓  Set "{name}" for stage "{ctx.stage}"')


async def cmd_secret_remove(cli: Cli) -> None:
    name = cli.positional(0)
    ctx = cli.init_project()
    backend = await cli.backend()
    try:
        secrets = await backend.get_secrets(ctx.key)
    except BackendError as e:
        raise ReadableError("Could not get secrets") from e
    if name not in secrets:
        raise SecretNotFoundError(name, ctx.stage)
    del secrets[name]
    try:
        await backend.put_secrets(ctx.key, secrets)
    except BackendError as e:
        raise ReadableError("Could not set secret") from e
    cli.ui.info(f'✓  Removed "{name}" for stage "{ctx.stage}"')


async def cmd_secret_list(cli: Cli) -> None:
    ctx = cli.init_project()
    backend = await cli.backend()
    try:
        secrets = await backend.get_secrets(ctx.key)
    except BackendError as e:
        raise ReadableError("Could not get secrets") from e
    for name in sorted(secrets):
        cli.ui.info(f"{name} = {secrets[name]}")


async def cmd_shell(cli: Cli) -> None:
    ctx = cli.init_project()
    argv = split_command(cli.positionals) or ["sh"]
    returncode = await _run_with_links(
        cli, argv, {"PS1": f"{ctx.project.name}/{ctx.stage}> "}
    )
    if returncode != 0:
        raise ReadableError(f"{argv[0]} exited with status {returncode}")


async def cmd_server(cli: Cli) -> None:
    ctx = cli.init_project()
    lifecycle = await cli.lifecycle()
    server = CoordinationServer(ctx.project.paths, ctx.key, cli.settings.server)
    result = server.start()
    if isinstance(result, Attached):
        raise ServerAlreadyRunningError()
    cli.ui.info(f"Server listening on {result.session.address}")
    await server.serve(result, lifecycle)


async def cmd_dev(cli: Cli) -> None:
    ctx = cli.init_project()
    lifecycle = await cli.lifecycle()
    server = CoordinationServer(ctx.project.paths, ctx.key, cli.settings.server)
    argv = split_command(cli.positionals)
    result = server.start()

    if isinstance(result, Attached):
        cli.ui.info(f"Attached to dev server at {result.session.address}")
        serving = _follow_remote(cli, result.session.address)
    else:
        cli.ui.info(f"Started dev server on {result.session.address}")
        serving = server.serve(
            result,
            lifecycle,
            watch=ctx.project.paths.config,
            deploy_on_start=True,
            # a foreground command owns the terminal
            on_frame=None if argv else _frame_renderer(cli.ui),
        )

    task = asyncio.create_task(serving)
    try:
        if argv:
            returncode = await _run_with_links(cli, argv, {})
            if returncode != 0:
                raise ReadableError(f"{argv[0]} exited with status {returncode}")
        else:
            await task
    finally:
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


async def cmd_import(cli: Cli) -> None:
    resource_type, name, resource_id = cli.positional(0), cli.positional(1), cli.positional(2)
    lifecycle = await cli.lifecycle()
    await lifecycle.import_resource(resource_type, name, resource_id, cli.string("parent") or None)
    cli.ui.info(f"✓  Imported {resource_type} {name} ({resource_id})")


async def cmd_version(cli: Cli) -> None:
    cli.ui.info(__version__)


async def cmd_introspect(cli: Cli) -> None:
    cli.ui.info(json.dumps(cli.root.to_dict(), indent=2))


# ── tree ─────────────────────────────────────────────────────────────────────


def build_root() -> Command:
    return Command(
        name="stackctl",
        description=Description(short="deploy and coordinate application stacks"),
        flags=(
            Flag("stage", FlagKind.string, Description(short="The stage to deploy to")),
            Flag("verbose", FlagKind.bool, Description(short="Enable verbose logging")),
            Flag("help", FlagKind.bool, Description(short="Print help")),
        ),
        children=(
            Command(
                name="dev",
                description=Description(
                    short="Run in development mode",
                    long=(
                        "Start the project's coordination server, deploy, and redeploy "
                        "whenever the config changes. If a server is already running for "
                        "this project, attach to it instead. Pass a command to run it "
                        "with linked resources in its environment."
                    ),
                ),
                arguments=(Argument("command", description=Description(short="The command to run")),),
                examples=(
                    Example("stackctl dev"),
                    Example('stackctl dev "npm run dev -- --port 3000"'),
                ),
                handler=cmd_dev,
            ),
            Command(
                name="deploy",
                description=Description(
                    short="Deploy your application",
                    long="Deploy your application. By default, it deploys to your personal stage.",
                ),
                examples=(Example("stackctl deploy --stage=production"),),
                handler=cmd_deploy,
            ),
            Command(
                name="secret",
                description=Description(short="Manage secrets"),
                children=(
                    Command(
                        name="set",
                        description=Description(short="Set a secret"),
                        arguments=(
                            Argument("name", required=True, description=Description(short="The name of the secret")),
                            Argument("value", required=True, description=Description(short="The value of the secret")),
                        ),
                        examples=(
                            Example("stackctl secret set StripeSecret 123456789"),
                            Example("stackctl secret set StripeSecret prodsecret --stage=production"),
                        ),
                        handler=cmd_secret_set,
                    ),
                    Command(
                        name="remove",
                        description=Description(short="Remove a secret"),
                        arguments=(
                            Argument("name", required=True, description=Description(short="The name of the secret")),
                        ),
                        examples=(Example("stackctl secret remove StripeSecret"),),
                        handler=cmd_secret_remove,
                    ),
                    Command(
                        name="list",
                        description=Description(short="List all secrets"),
                        examples=(Example("stackctl secret list --stage=production"),),
                        handler=cmd_secret_list,
                    ),
                ),
            ),
            Command(
                name="shell",
                description=Description(
                    short="Run a command with linked resources",
                    long="Run a command with every linked resource in its environment. "
                    "Without a command, opens a shell session.",
                ),
                arguments=(Argument("command", description=Description(short="A command to run")),),
                examples=(Example("stackctl shell"),),
                handler=cmd_shell,
            ),
            Command(
                name="remove",
                description=Description(
                    short="Remove your application",
                    long="Removes your application. By default, it removes your personal stage.",
                ),
                examples=(Example("stackctl remove --stage=production"),),
                handler=cmd_remove,
            ),
            Command(
                name="unlock",
                description=Description(
                    short="Clear any locks on the app state",
                    long=(
                        "A deploy holds a lock on the stage so two deploys never run at once. "
                        "If the deploying process was killed the lock stays behind; this "
                        "clears it. It does not stop a deploy that is still running."
                    ),
                ),
                handler=cmd_unlock,
            ),
            Command(
                name="version",
                description=Description(short="Print the version of the CLI"),
                handler=cmd_version,
            ),
            Command(
                name="import-unstable",
                hidden=True,
                description=Description(short="(unstable) Import existing resource"),
                arguments=(
                    Argument("type", required=True, description=Description(short="The type of the resource")),
                    Argument("name", required=True, description=Description(short="The name of the resource")),
                    Argument("id", required=True, description=Description(short="The id of the resource")),
                ),
                flags=(Flag("parent", FlagKind.string, Description(short="The parent resource")),),
                handler=cmd_import,
            ),
            Command(name="server", hidden=True, handler=cmd_server),
            Command(name="introspect", hidden=True, handler=cmd_introspect),
            Command(
                name="refresh",
                hidden=True,
                description=Description(short="Refresh the state of your deployment"),
                handler=cmd_refresh,
            ),
            Command(
                name="state",
                hidden=True,
                description=Description(short="Manage state of your deployment"),
                children=(
                    Command(
                        name="edit",
                        description=Description(short="Edit the state of your deployment"),
                        handler=cmd_state_edit,
                    ),
                ),
            ),
        ),
    )
