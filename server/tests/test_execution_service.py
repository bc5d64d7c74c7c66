"""Tests for control message dispatch and the script-run workflow."""

import asyncio
import json

import pytest

from pvescripts.core.models import ControlMessage, InstallStatus, MessageType
from pvescripts.services.execution_service import ScriptExecutionHandler
from pvescripts.services.script_registry import InMemoryScriptRegistry, ScriptRegistryError
from pvescripts.services.session_registry import SessionRegistry
from pvescripts.services.workflow_base import Workflow

from execution_fakes import (
    SERVER,
    FakeLocalSpawner,
    FakeSSHService,
    RecordingChannel,
    drain,
)


def _handler(test_settings, spawner=None, ssh=None, registry=None):
    return ScriptExecutionHandler(
        SessionRegistry(),
        registry or InMemoryScriptRegistry(),
        ssh or FakeSSHService(),
        local_spawner=spawner or FakeLocalSpawner(),
        config=test_settings,
    )


def _start(script_path, execution_id="exec-1", **extra):
    payload = {"action": "start", "scriptPath": script_path, "executionId": execution_id}
    payload.update(extra)
    return json.dumps(payload)


@pytest.mark.anyio("asyncio")
async def test_invalid_json_reports_error(test_settings):
    handler = _handler(test_settings)
    channel = RecordingChannel()

    await handler.handle_raw(channel, "{not json")

    assert channel.messages == [(MessageType.ERROR, "Invalid message format")]


@pytest.mark.anyio("asyncio")
async def test_unknown_action_reports_error(test_settings):
    handler = _handler(test_settings)
    channel = RecordingChannel()

    await handler.handle_raw(channel, json.dumps({"action": "restart", "executionId": "x"}))

    assert channel.messages == [(MessageType.ERROR, "Unknown action")]


@pytest.mark.anyio("asyncio")
async def test_start_requires_script_path_and_execution_id(test_settings):
    handler = _handler(test_settings)
    channel = RecordingChannel()

    await handler.handle_raw(channel, json.dumps({"action": "start", "executionId": "x"}))

    assert channel.messages == [(MessageType.ERROR, "Missing scriptPath or executionId")]
    assert handler.active_sessions == 0


@pytest.mark.anyio("asyncio")
async def test_stop_for_unknown_execution_is_silent(test_settings):
    handler = _handler(test_settings)
    channel = RecordingChannel()

    await handler.handle_raw(channel, json.dumps({"action": "stop", "executionId": "ghost"}))

    assert channel.messages == []


@pytest.mark.anyio("asyncio")
async def test_input_for_unknown_execution_is_dropped(test_settings):
    handler = _handler(test_settings)
    channel = RecordingChannel()

    await handler.handle_raw(
        channel, json.dumps({"action": "input", "executionId": "ghost", "input": "y\n"})
    )

    assert channel.messages == []


@pytest.mark.anyio("asyncio")
async def test_local_script_run_records_discoveries_and_success(test_settings, scripts_dir):
    registry = InMemoryScriptRegistry()
    spawner = FakeLocalSpawner(
        [
            "Creating LXC...\n",
            "\x1b[32m🆔 Container ID: 105\x1b[0m\n",
            "Access it using http://192.168.1.50:8123\n",
        ],
        exit_code=0,
    )
    handler = _handler(test_settings, spawner=spawner, registry=registry)
    channel = RecordingChannel()
    script = str(scripts_dir / "ct" / "debian.sh")

    await handler.handle_raw(channel, _start(script))
    await drain(handler)

    record = registry.get(1)
    assert record.script_name == "debian.sh"
    assert record.status is InstallStatus.SUCCESS
    assert record.container_id == "105"
    assert record.web_ui_ip == "192.168.1.50"
    assert record.web_ui_port == 8123
    assert "Container ID: 105" in record.output_log

    assert spawner.calls == [["bash", str((scripts_dir / "ct" / "debian.sh").resolve())]]
    assert channel.messages[0] == (MessageType.START, f"Starting execution of {script}")
    assert channel.of_type(MessageType.END) == ["Script execution finished with code: 0, signal: None"]
    assert handler.active_sessions == 0


@pytest.mark.anyio("asyncio")
async def test_failed_exit_marks_record_failed(test_settings, scripts_dir):
    registry = InMemoryScriptRegistry()
    handler = _handler(test_settings, spawner=FakeLocalSpawner(["oops\n"], 1), registry=registry)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(str(scripts_dir / "ct" / "debian.sh")))
    await drain(handler)

    assert registry.get(1).status is InstallStatus.FAILED
    assert registry.get(1).output_log == "oops\n"


@pytest.mark.anyio("asyncio")
async def test_script_outside_scripts_dir_is_rejected(test_settings, tmp_path):
    registry = InMemoryScriptRegistry()
    spawner = FakeLocalSpawner()
    handler = _handler(test_settings, spawner=spawner, registry=registry)
    channel = RecordingChannel()
    outside = tmp_path / "evil.sh"
    outside.write_text("rm -rf /\n")

    await handler.handle_raw(channel, _start(str(outside)))
    await drain(handler)

    assert spawner.calls == []
    assert registry.get(1).status is InstallStatus.FAILED
    assert channel.messages == [
        (MessageType.ERROR, "Script path is not within the allowed scripts directory")
    ]
    assert handler.active_sessions == 0


@pytest.mark.anyio("asyncio")
async def test_remote_mode_without_server_is_rejected(test_settings, scripts_dir):
    registry = InMemoryScriptRegistry()
    ssh = FakeSSHService()
    handler = _handler(test_settings, ssh=ssh, registry=registry)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(str(scripts_dir / "ct" / "debian.sh"), mode="remote"))
    await drain(handler)

    assert ssh.commands == []
    assert registry.get(1).status is InstallStatus.FAILED
    assert channel.of_type(MessageType.ERROR) == ["Remote execution requires server details"]


@pytest.mark.anyio("asyncio")
async def test_remote_script_run_uploads_and_reports_ssh_exit(test_settings, scripts_dir):
    registry = InMemoryScriptRegistry()
    ssh = FakeSSHService(lambda command: (["CT ID: 210\n"], 0))
    handler = _handler(test_settings, ssh=ssh, registry=registry)
    channel = RecordingChannel()

    await handler.handle_raw(
        channel, _start(str(scripts_dir / "ct" / "debian.sh"), mode="ssh", server=SERVER)
    )
    await drain(handler)

    assert ssh.uploads == [str((scripts_dir / "ct" / "debian.sh").resolve())]
    record = registry.get(1)
    assert record.server_id == 7
    assert record.container_id == "210"
    assert record.status is InstallStatus.SUCCESS
    assert channel.of_type(MessageType.END) == ["SSH script execution finished with code: 0"]


@pytest.mark.anyio("asyncio")
async def test_start_failure_marks_record_failed(test_settings, scripts_dir):
    registry = InMemoryScriptRegistry()
    ssh = FakeSSHService(fail_on=["bash"])
    handler = _handler(test_settings, ssh=ssh, registry=registry)
    channel = RecordingChannel()

    await handler.handle_raw(
        channel, _start(str(scripts_dir / "ct" / "debian.sh"), mode="remote", server=SERVER)
    )
    await drain(handler)

    assert registry.get(1).status is InstallStatus.FAILED
    errors = channel.of_type(MessageType.ERROR)
    assert len(errors) == 1
    assert errors[0].startswith("Failed to start SSH execution:")
    assert channel.of_type(MessageType.END) == []


@pytest.mark.anyio("asyncio")
async def test_duplicate_start_leaves_running_session_untouched(test_settings, scripts_dir):
    spawner = FakeLocalSpawner(hold=True)
    handler = _handler(test_settings, spawner=spawner)
    channel = RecordingChannel()
    script = str(scripts_dir / "ct" / "debian.sh")

    await handler.handle_raw(channel, _start(script))
    while not spawner.processes:
        await asyncio.sleep(0)
    session = handler.sessions.get("exec-1")
    first_process = session.process

    await handler.handle_raw(channel, _start(script))

    assert channel.of_type(MessageType.ERROR) == ["Script execution already running"]
    assert handler.sessions.get("exec-1") is session
    assert session.process is first_process
    assert len(spawner.calls) == 1

    await handler.close_channel(channel)


@pytest.mark.anyio("asyncio")
async def test_input_and_stop_reach_running_process(test_settings, scripts_dir):
    registry = InMemoryScriptRegistry()
    spawner = FakeLocalSpawner(hold=True)
    handler = _handler(test_settings, spawner=spawner, registry=registry)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(str(scripts_dir / "ct" / "debian.sh")))
    while not spawner.processes:
        await asyncio.sleep(0)
    process = spawner.processes[0]
    process.exit_on_write = False

    await handler.handle_raw(
        channel, json.dumps({"action": "input", "executionId": "exec-1", "input": "y\n"})
    )
    await handler.handle_raw(channel, json.dumps({"action": "stop", "executionId": "exec-1"}))
    await drain(handler)

    assert process.written == ["y\n"]
    assert process.killed_with is not None
    assert channel.of_type(MessageType.END) == ["Script execution stopped by user"]
    assert registry.get(1).status is InstallStatus.FAILED
    assert handler.active_sessions == 0


@pytest.mark.anyio("asyncio")
async def test_channel_close_kills_owned_sessions(test_settings, scripts_dir):
    spawner = FakeLocalSpawner(hold=True)
    handler = _handler(test_settings, spawner=spawner)
    channel = RecordingChannel("closing")
    bystander = RecordingChannel("bystander")
    script = str(scripts_dir / "ct" / "debian.sh")

    await handler.handle_raw(channel, _start(script, "mine"))
    await handler.handle_raw(bystander, _start(script, "theirs"))
    while len(spawner.processes) < 2:
        await asyncio.sleep(0)
    mine = handler.sessions.get("mine").process
    theirs = handler.sessions.get("theirs").process

    await handler.close_channel(channel)

    assert "mine" not in handler.sessions
    assert "theirs" in handler.sessions
    assert mine.killed_with is not None
    assert theirs.running

    await handler.close_channel(bystander)
    assert handler.active_sessions == 0


class _GatedSpawner(FakeLocalSpawner):
    """Holds every spawn until ``gate`` is set."""

    def __init__(self):
        super().__init__(hold=True)
        self.gate = asyncio.Event()
        self.waiting = 0

    async def __call__(self, argv, **kwargs):
        self.waiting += 1
        await self.gate.wait()
        return await super().__call__(argv, **kwargs)


@pytest.mark.anyio("asyncio")
async def test_stop_while_starting_kills_the_late_process(test_settings, scripts_dir):
    registry = InMemoryScriptRegistry()
    spawner = _GatedSpawner()
    handler = _handler(test_settings, spawner=spawner, registry=registry)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(str(scripts_dir / "ct" / "debian.sh")))
    while not spawner.waiting:
        await asyncio.sleep(0)
    await handler.handle_raw(channel, json.dumps({"action": "stop", "executionId": "exec-1"}))
    spawner.gate.set()
    await drain(handler)

    process = spawner.processes[0]
    assert process.killed_with is not None
    assert not process.running
    assert channel.of_type(MessageType.END) == ["Script execution stopped by user"]
    assert registry.get(1).status is InstallStatus.FAILED
    assert handler.active_sessions == 0


@pytest.mark.anyio("asyncio")
async def test_workflow_cleanup_kills_process_of_a_stopped_session(test_settings, scripts_dir):
    spawner = FakeLocalSpawner(hold=True)
    handler = _handler(test_settings, spawner=spawner)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(str(scripts_dir / "ct" / "debian.sh")))
    while not spawner.processes:
        await asyncio.sleep(0)
    session = handler.sessions.get("exec-1")
    handler.sessions.remove("exec-1", session)

    await handler.close_channel(channel)

    assert spawner.processes[0].killed_with is not None
    assert not spawner.processes[0].running


@pytest.mark.anyio("asyncio")
async def test_output_log_is_capped_by_injected_config(test_settings, scripts_dir):
    registry = InMemoryScriptRegistry()
    handler = ScriptExecutionHandler(
        registry=registry,
        ssh=FakeSSHService(),
        local_spawner=FakeLocalSpawner(["0123456789abcdef\n"], 0),
        config=test_settings.model_copy(update={"output_log_limit": 10}),
    )
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(str(scripts_dir / "ct" / "debian.sh")))
    await drain(handler)

    assert registry.get(1).output_log == "789abcdef\n"
    assert channel.of_type(MessageType.OUTPUT) == ["0123456789abcdef\n"]


class _BrokenRegistry(InMemoryScriptRegistry):
    async def update(self, record_id, **fields):
        raise ScriptRegistryError("database is locked")


@pytest.mark.anyio("asyncio")
async def test_registry_failures_do_not_abort_the_stream(test_settings, scripts_dir):
    handler = _handler(
        test_settings,
        spawner=FakeLocalSpawner(["Container ID: 105\n"], 0),
        registry=_BrokenRegistry(),
    )
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(str(scripts_dir / "ct" / "debian.sh")))
    await drain(handler)

    assert channel.of_type(MessageType.OUTPUT) == ["Container ID: 105\n"]
    assert len(channel.of_type(MessageType.END)) == 1


@pytest.mark.unit
def test_workflow_selection_precedence(test_settings):
    handler = _handler(test_settings)

    def pick(**flags):
        message = ControlMessage(action="start", scriptPath="x", executionId="1", **flags)
        return handler.select_workflow(message)

    assert pick(isClone=True, isUpdate=True) is handler.clone
    assert pick(isBackup=True, isUpdate=True) is handler.backup
    assert pick(isUpdate=True, isShell=True) is handler.update
    assert pick(isShell=True) is handler.shell
    assert pick() is handler.script_run


@pytest.mark.unit
def test_workflow_base_cannot_be_instantiated(test_settings):
    with pytest.raises(TypeError):
        Workflow(SessionRegistry(), InMemoryScriptRegistry(), FakeSSHService(), config=test_settings)
