"""End-to-end tests for the CLI entry point: argv in, exit code and output out."""

from __future__ import annotations

import asyncio
import contextlib
import io
import json
import shlex
import sys
import threading
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from stackctl.backend.base import StageKey
from stackctl.backend.local import LocalBackend
from stackctl.cli.main import run
from stackctl.cli.ui import ConsoleUI
from stackctl.config.settings import ServerSettings
from stackctl.project import discover
from stackctl.server.coordination import CoordinationServer, Owns
from stackctl.stack.engine import ProvisioningEngine
from stackctl.stack.lifecycle import StackLifecycle

KEY = StageKey(app="myapp", stage="alice")

_ENGINE = """
import json, sys
print(json.dumps({"type": "progress", "resource": "Bucket", "status": "created"}), flush=True)
print(json.dumps({"type": "diagnostic", "level": "warning", "message": "slow region"}), flush=True)
if sys.argv[1] == "destroy":
    print("bucket not empty", file=sys.stderr)
    sys.exit(1)
"""


class Console:
    def __init__(self) -> None:
        self.out = io.StringIO()
        self.err = io.StringIO()
        self.ui = ConsoleUI(self.out, self.err)

    def run(self, *argv: str) -> int:
        return run(list(argv), ui=self.ui)


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    # run() points structlog at a log file it closes on exit
    structlog.reset_defaults()


@pytest.fixture
def console() -> Console:
    return Console()


@pytest.fixture
def home(project_dir: Path) -> LocalBackend:
    return LocalBackend(project_dir.parent / "home")


@pytest.fixture
def engine_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STACKCTL_ENGINE_COMMAND", json.dumps([sys.executable, "-c", _ENGINE]))


class TestNoProject:
    def test_version(self, console: Console) -> None:
        assert console.run("version") == 0
        assert console.out.getvalue().strip() == "0.1.0"

    def test_unknown_command_prints_root_help(self, console: Console) -> None:
        assert console.run("bogus") == 0

        out = console.out.getvalue()
        assert out.startswith("stackctl: deploy and coordinate application stacks")
        assert "stackctl deploy" in out
        assert "import-unstable" not in out

    def test_missing_arguments_prints_leaf_help(self, console: Console) -> None:
        assert console.run("secret", "set", "OnlyName") == 0
        assert console.out.getvalue().startswith("Usage: stackctl secret set <name> <value>")

    def test_introspect_dumps_tree(self, console: Console) -> None:
        assert console.run("introspect") == 0

        tree = json.loads(console.out.getvalue())
        assert tree["name"] == "stackctl"
        assert "deploy" in [c["name"] for c in tree["children"]]

    def test_outside_project_is_readable_error(
        self, console: Console, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)

        assert console.run("secret", "list", "--stage=alice") == 1
        assert console.err.getvalue().startswith("Error: Could not find stackctl.config.json")

    def test_invalid_settings_is_readable_error(
        self, console: Console, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("STACKCTL_BACKEND_KIND", "s3")

        assert console.run("version") == 1
        assert "Error: Invalid configuration" in console.err.getvalue()


class TestSecrets:
    def test_set_list_remove(self, console: Console, project_dir: Path) -> None:
        assert console.run("secret", "set", "StripeSecret", "123", "--stage=alice") == 0
        assert console.run("secret", "set", "Another", "x y", "--stage=alice") == 0
        assert console.run("secret", "list", "--stage=alice") == 0
        assert console.run("secret", "remove", "StripeSecret", "--stage=alice") == 0

        lines = console.out.getvalue().splitlines()
        assert lines == [
            '✓  Set "StripeSecret" for stage "alice"',
            '✓  Set "Another" for stage "alice"',
            "Another = x y",
            "StripeSecret = 123",
            '✓  Removed "StripeSecret" for stage "alice"',
        ]

    def test_secrets_are_per_stage(self, console: Console, project_dir: Path) -> None:
        console.run("secret", "set", "Key", "dev-value", "--stage=alice")
        console.out.truncate(0)
        console.out.seek(0)

        assert console.run("secret", "list", "--stage=production") == 0
        assert console.out.getvalue() == ""

    def test_remove_missing_secret(self, console: Console, project_dir: Path) -> None:
        assert console.run("secret", "remove", "Nope", "--stage=alice") == 1
        assert console.err.getvalue().strip() == 'Error: Secret "Nope" does not exist for stage "alice"'

    def test_log_file_is_written_in_project(self, console: Console, project_dir: Path) -> None:
        assert console.run("secret", "list", "--stage=alice") == 0

        log = (project_dir / ".stackctl" / "stackctl.log").read_text("utf-8")
        assert "cli_started" in log
        assert "loaded_config" in log

    def test_stage_flag_does_not_persist_personal_stage(
        self, console: Console, project_dir: Path
    ) -> None:
        console.run("secret", "list", "--stage=alice")
        assert not (project_dir / ".stackctl" / "stage").exists()

    def test_path_like_stage_is_rejected(self, console: Console, project_dir: Path) -> None:
        assert console.run("secret", "set", "Key", "v", "--stage=../billing/production") == 1

        assert "Invalid stage name '../billing/production'" in console.err.getvalue()
        assert not (project_dir.parent / "home" / "billing").exists()

    def test_path_like_app_name_is_rejected(self, console: Console, project_dir: Path) -> None:
        (project_dir / "stackctl.config.json").write_text('{"name": "../other"}', encoding="utf-8")

        assert console.run("secret", "list", "--stage=alice") == 1
        assert "Invalid app name '../other'" in console.err.getvalue()


class TestLocking:
    def test_deploy_fails_fast_when_locked(
        self, console: Console, project_dir: Path, home: LocalBackend
    ) -> None:
        asyncio.run(home.acquire_lock(KEY, "other-terminal"))

        assert console.run("deploy", "--stage=alice") == 1

        err = console.err.getvalue()
        assert "myapp/alice is locked by other-terminal" in err
        assert "Another deploy is in progress for this stage." in err

    def test_unlock_clears_stale_lock(
        self, console: Console, project_dir: Path, home: LocalBackend
    ) -> None:
        asyncio.run(home.acquire_lock(KEY, "dead-process"))

        assert console.run("unlock", "--stage=alice") == 0

        assert console.out.getvalue().strip() == "✓  Unlocked the app state for: myapp / alice"
        assert asyncio.run(home.get_lock(KEY)) is None

    def test_import_adds_resource(
        self, console: Console, project_dir: Path, home: LocalBackend, tmp_path: Path
    ) -> None:
        assert (
            console.run("import-unstable", "Bucket", "assets", "b-1", "--parent=App", "--stage=alice")
            == 0
        )

        state = json.loads(asyncio.run(home.pull_state(KEY, tmp_path / "s.json")).read_bytes())
        assert state["resources"][0]["id"] == "b-1"
        assert asyncio.run(home.get_lock(KEY)) is None


@pytest.mark.integration
class TestEngineRuns:
    def test_deploy_renders_events(
        self, console: Console, project_dir: Path, home: LocalBackend, engine_env: None
    ) -> None:
        assert console.run("deploy", "--stage=alice") == 0

        assert console.out.getvalue().splitlines() == [
            "Deploying myapp/alice",
            "|  created    Bucket",
            "|  WARNING: slow region",
            "✓  Complete",
        ]
        assert asyncio.run(home.get_lock(KEY)) is None

    def test_failed_remove_reports_and_releases(
        self, console: Console, project_dir: Path, home: LocalBackend, engine_env: None
    ) -> None:
        assert console.run("remove", "--stage=alice") == 1

        assert console.out.getvalue().splitlines()[-1] == (
            "✕  Failed: Provisioning engine exited with status 1: bucket not empty"
        )
        assert "Error: Provisioning engine exited with status 1" in console.err.getvalue()
        assert asyncio.run(home.get_lock(KEY)) is None

    def test_state_edit_pushes_editor_changes(
        self,
        console: Console,
        project_dir: Path,
        home: LocalBackend,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        script = "import sys; open(sys.argv[1], 'w').write('{\"edited\": true}')"
        monkeypatch.setenv("EDITOR", f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}")

        assert console.run("state", "edit", "--stage=alice") == 0

        assert console.out.getvalue().strip() == "✓  Pushed state version 1"
        pulled = asyncio.run(home.pull_state(KEY, tmp_path / "check.json"))
        assert pulled.read_bytes() == b'{"edited": true}'
        assert asyncio.run(home.get_lock(KEY)) is None

    def test_failing_editor_pushes_nothing(
        self,
        console: Console,
        project_dir: Path,
        home: LocalBackend,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("EDITOR", f"{shlex.quote(sys.executable)} -c 'raise SystemExit(2)'")

        assert console.run("state", "edit", "--stage=alice") == 1

        assert console.err.getvalue().strip() == "Error: Editor exited with error"
        assert asyncio.run(home.get_lock(KEY)) is None

    def test_shell_passes_linked_resources(
        self, console: Console, project_dir: Path, home: LocalBackend, tmp_path: Path
    ) -> None:
        asyncio.run(home.put_links(KEY, {"Bucket": {"name": "b-1"}}))
        out_file = tmp_path / "env.json"
        script = (
            "import os, pathlib; "
            f"pathlib.Path({str(out_file)!r}).write_text(os.environ['STACKCTL_RESOURCE_Bucket'])"
        )

        command = f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}"
        assert console.run("shell", command, "--stage=alice") == 0

        assert json.loads(out_file.read_text("utf-8")) == {"name": "b-1"}

    def test_shell_reports_child_failure(self, console: Console, project_dir: Path) -> None:
        command = f"{shlex.quote(sys.executable)} -c 'raise SystemExit(3)'"

        assert console.run("shell", command, "--stage=alice") == 1
        assert "exited with status 3" in console.err.getvalue()

    def test_server_refuses_second_instance(self, console: Console, project_dir: Path) -> None:
        owner = CoordinationServer(discover(project_dir), KEY, ServerSettings()).start()
        assert isinstance(owner, Owns)
        try:
            assert console.run("server", "--stage=alice") == 1
        finally:
            owner.sock.close()

        err = console.err.getvalue()
        assert "Error: Server already running" in err
        assert "stackctl dev" in err


@contextlib.contextmanager
def _served(project_dir: Path, engine: ProvisioningEngine) -> Iterator[Owns]:
    """Serve the project's coordination server from another thread, like a second terminal."""
    server = CoordinationServer(discover(project_dir), KEY, ServerSettings())
    owned = server.start()
    assert isinstance(owned, Owns)
    lifecycle = StackLifecycle(
        LocalBackend(project_dir.parent / "home"),
        engine,
        KEY,
        state_dir=project_dir / ".stackctl" / "state",
        holder_id="dev-terminal",
    )
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    stopped = asyncio.Event()

    async def serve() -> None:
        task = asyncio.create_task(server.serve(owned, lifecycle))
        await stopped.wait()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    serving = asyncio.run_coroutine_threadsafe(serve(), loop)
    try:
        yield owned
    finally:
        loop.call_soon_threadsafe(stopped.set)
        serving.result(10)
        loop.call_soon_threadsafe(loop.stop)
        thread.join(10)
        loop.close()


def _child(marker: Path) -> str:
    script = f"import pathlib; pathlib.Path({str(marker)!r}).write_text('ran')"
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}"


@pytest.mark.integration
class TestServerRouting:
    def test_deploy_runs_through_live_server(
        self, console: Console, project_dir: Path, home: LocalBackend, engine_factory
    ) -> None:
        engine = engine_factory()
        with _served(project_dir, engine):
            assert console.run("deploy", "--stage=alice") == 0

        assert engine.commands == ["up"]
        assert console.out.getvalue().splitlines() == [
            "Deploying myapp/alice",
            "|  created    A",
            "|  created    B",
            "✓  Complete",
        ]
        assert asyncio.run(home.get_lock(KEY)) is None

    def test_stale_session_file_falls_back_to_local_run(
        self, console: Console, project_dir: Path, home: LocalBackend, engine_env: None
    ) -> None:
        # bind and close: server.json stays behind, nothing listens
        owned = CoordinationServer(discover(project_dir), KEY, ServerSettings()).start()
        assert isinstance(owned, Owns)
        owned.sock.close()
        assert discover(project_dir).server_file.exists()

        assert console.run("deploy", "--stage=alice") == 0

        assert console.out.getvalue().splitlines()[-1] == "✓  Complete"
        assert asyncio.run(home.get_lock(KEY)) is None

    def test_dev_owns_server_and_runs_command(
        self, console: Console, project_dir: Path, home: LocalBackend, engine_env: None, tmp_path: Path
    ) -> None:
        marker = tmp_path / "child-ran"

        assert console.run("dev", _child(marker), "--stage=alice") == 0

        assert marker.read_text("utf-8") == "ran"
        assert console.out.getvalue().startswith("Started dev server on ws://127.0.0.1:")
        assert not discover(project_dir).server_file.exists()
        assert asyncio.run(home.get_lock(KEY)) is None

    def test_dev_attaches_to_running_server(
        self, console: Console, project_dir: Path, engine_factory, tmp_path: Path
    ) -> None:
        engine = engine_factory()
        marker = tmp_path / "child-ran"

        with _served(project_dir, engine) as owned:
            assert console.run("dev", _child(marker), "--stage=alice") == 0

        assert marker.read_text("utf-8") == "ran"
        assert console.out.getvalue().startswith(
            f"Attached to dev server at {owned.session.address}"
        )
        # the owning terminal deploys; an attached one never does
        assert engine.commands == []
