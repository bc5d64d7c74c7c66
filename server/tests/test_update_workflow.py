"""Tests for the update, shell and backup workflows."""

import asyncio
import json

import pytest

from pvescripts.core.models import MessageType
from pvescripts.services.execution_service import ScriptExecutionHandler
from pvescripts.services.script_registry import InMemoryScriptRegistry
from pvescripts.services.session_registry import SessionRegistry

from execution_fakes import (
    SERVER,
    FakeLocalSpawner,
    FakeSSHService,
    RecordingChannel,
    drain,
)


def _handler(test_settings, ssh=None, spawner=None):
    return ScriptExecutionHandler(
        SessionRegistry(),
        InMemoryScriptRegistry(),
        ssh or FakeSSHService(),
        local_spawner=spawner or FakeLocalSpawner(),
        config=test_settings,
    )


def _start(**flags):
    payload = {
        "action": "start",
        "scriptPath": "update",
        "executionId": "exec-1",
        "mode": "remote",
        "server": SERVER,
        "containerId": "105",
    }
    payload.update(flags)
    return json.dumps(payload)


def _vzdump(code):
    def respond(command):
        if command.startswith("vzdump"):
            return ["INFO: starting new backup job\n"], code
        return [], 0

    return respond


@pytest.mark.anyio("asyncio")
async def test_failed_backup_does_not_block_update(test_settings):
    ssh = FakeSSHService(_vzdump(2), hold_on=["pct enter"])
    handler = _handler(test_settings, ssh=ssh)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(isUpdate=True, backupStorage="local"))
    await drain(handler)

    assert ssh.commands == ["vzdump 105 --storage local --mode snapshot", "pct enter 105"]
    assert ssh.processes["pct enter 105"].written == ["update\n"]

    assert channel.of_type(MessageType.START) == [
        "Starting backup before update for container 105...",
        "Starting update for container 105...",
    ]
    assert "Backup failed with exit code: 2" in channel.of_type(MessageType.ERROR)
    output = channel.text()
    assert "[Backup failed with exit code: 2]" in output
    assert "Backup failed, but proceeding with update as requested" in output
    assert channel.of_type(MessageType.END) == ["Update completed with exit code: 0"]
    assert handler.active_sessions == 0


@pytest.mark.anyio("asyncio")
async def test_successful_backup_then_update(test_settings):
    ssh = FakeSSHService(_vzdump(0), hold_on=["pct enter"])
    handler = _handler(test_settings, ssh=ssh)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(isUpdate=True, backupStorage="local"))
    await drain(handler)

    assert channel.of_type(MessageType.ERROR) == []
    assert "✅ Backup completed successfully. Starting update..." in channel.text()
    assert ssh.processes["pct enter 105"].written == ["update\n"]


@pytest.mark.anyio("asyncio")
async def test_backup_start_failure_still_runs_update(test_settings):
    ssh = FakeSSHService(fail_on=["vzdump"], hold_on=["pct enter"])
    handler = _handler(test_settings, ssh=ssh)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(isUpdate=True, backupStorage="local"))
    await drain(handler)

    errors = channel.of_type(MessageType.ERROR)
    assert len(errors) == 1
    assert errors[0].startswith("SSH backup execution failed:")
    assert ssh.processes["pct enter 105"].written == ["update\n"]
    assert channel.of_type(MessageType.END) == ["Update completed with exit code: 0"]


@pytest.mark.anyio("asyncio")
async def test_invalid_backup_storage_is_reported_and_update_proceeds(test_settings):
    ssh = FakeSSHService(hold_on=["pct enter"])
    handler = _handler(test_settings, ssh=ssh)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(isUpdate=True, backupStorage="local; reboot"))
    await drain(handler)

    assert ssh.commands == ["pct enter 105"]
    assert "⚠️ Backup error: Invalid storage" in channel.text()


@pytest.mark.anyio("asyncio")
async def test_local_update_skips_backup_and_types_update(test_settings):
    spawner = FakeLocalSpawner(hold=True)
    ssh = FakeSSHService()
    handler = _handler(test_settings, ssh=ssh, spawner=spawner)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(isUpdate=True, mode="local", backupStorage="local"))
    await drain(handler)

    assert ssh.commands == []
    assert spawner.calls == [["bash", "-c", "pct enter 105"]]
    assert spawner.processes[0].written == ["update\n"]


@pytest.mark.anyio("asyncio")
async def test_shell_sends_no_command_and_stops_cleanly(test_settings):
    ssh = FakeSSHService(hold_on=["pct enter"])
    handler = _handler(test_settings, ssh=ssh)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(isShell=True))
    while "pct enter 105" not in ssh.processes:
        await asyncio.sleep(0)
    shell = ssh.processes["pct enter 105"]

    await handler.handle_raw(channel, json.dumps({"action": "stop", "executionId": "exec-1"}))
    await drain(handler)

    assert shell.written == []
    assert shell.killed_with is not None
    assert channel.of_type(MessageType.START) == ["Starting shell session for container 105..."]
    assert channel.of_type(MessageType.END) == ["Script execution stopped by user"]


@pytest.mark.anyio("asyncio")
async def test_shell_rejects_non_numeric_container_id(test_settings):
    ssh = FakeSSHService()
    handler = _handler(test_settings, ssh=ssh)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(isShell=True, containerId="105; reboot"))
    await drain(handler)

    assert ssh.commands == []
    assert channel.of_type(MessageType.ERROR)[0].startswith("Failed to start shell: Invalid container id")


@pytest.mark.anyio("asyncio")
async def test_standalone_backup_requires_ssh(test_settings):
    handler = _handler(test_settings)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(isBackup=True, mode="local", storage="local"))
    await drain(handler)

    assert channel.messages == [(MessageType.ERROR, "Backup is only supported via SSH")]


@pytest.mark.anyio("asyncio")
async def test_standalone_backup_reports_completion(test_settings):
    ssh = FakeSSHService(_vzdump(0))
    handler = _handler(test_settings, ssh=ssh)
    channel = RecordingChannel()

    await handler.handle_raw(channel, _start(isBackup=True, storage="backups"))
    await drain(handler)

    assert ssh.commands == ["vzdump 105 --storage backups --mode snapshot"]
    assert channel.of_type(MessageType.START) == [
        "Starting backup for container 105 to storage backups..."
    ]
    assert "\n[Backup completed with exit code: 0]\n" in channel.of_type(MessageType.OUTPUT)
    assert channel.of_type(MessageType.END) == ["Backup completed with exit code: 0"]
    assert handler.active_sessions == 0
