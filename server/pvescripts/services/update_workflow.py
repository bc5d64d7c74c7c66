"""Interactive guest sessions: in-place updates and plain shells."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..core.models import ControlMessage, ExecutionMode, MessageType
from .backup_workflow import BackupResult, BackupWorkflow
from .process_adapter import ProcessAdapter, ProcessStartError
from .session_registry import ExecutionSession, SessionAlreadyRunningError
from .workflow_base import (
    Workflow,
    WorkflowValidationError,
    require_guest_id,
    require_server,
    require_storage,
)

logger = logging.getLogger(__name__)

UPDATE_COMMAND = "update\n"


def enter_command(guest_id: str) -> str:
    return f"pct enter {guest_id}"


class ShellWorkflow(Workflow):
    """Open an interactive shell inside a container."""

    start_label = "Starting shell session for container {guest_id}..."
    end_label = "Shell session ended with exit code: {code}"
    failure_label = "Failed to start shell"

    async def run(self, session: ExecutionSession, message: ControlMessage) -> None:
        try:
            guest_id = require_guest_id(message.container_id)
            require_server(message.mode, message.server)
        except WorkflowValidationError as exc:
            await self.send(session, MessageType.ERROR, f"{self.failure_label}: {exc}")
            return

        await self.before_session(session, message, guest_id)
        if session.stopped:
            return
        process = await self.open_guest_session(session, message, guest_id)
        if process is None:
            return
        await self.after_start(process)
        await process.wait()

    async def before_session(
        self, session: ExecutionSession, message: ControlMessage, guest_id: str
    ) -> None:
        """Hook for work that must finish before the guest session opens."""

    async def after_start(self, process: ProcessAdapter) -> None:
        """Hook run once the guest session is up."""

    async def open_guest_session(
        self, session: ExecutionSession, message: ControlMessage, guest_id: str
    ) -> Optional[ProcessAdapter]:
        await self.send(session, MessageType.START, self.start_label.format(guest_id=guest_id))

        async def on_data(text: str) -> None:
            session.output.append(text)
            await self.send(session, MessageType.OUTPUT, text)

        async def on_exit(code: Optional[int], sig: Optional[str]) -> None:
            self.sessions.remove(session.execution_id, session)
            if not session.stopped:
                await self.send(session, MessageType.END, self.end_label.format(code=code))

        try:
            return await self.launch(
                session,
                mode=message.mode,
                server=message.server,
                command=enter_command(guest_id),
                on_data=on_data,
                on_exit=on_exit,
                description=f"guest:{guest_id}",
            )
        except ProcessStartError as exc:
            logger.error("Guest session for %s could not start: %s", guest_id, exc)
            prefix = "SSH execution failed" if message.mode is ExecutionMode.REMOTE else self.failure_label
            await self.send(session, MessageType.ERROR, f"{prefix}: {exc}")
            return None


class UpdateWorkflow(ShellWorkflow):
    """Optionally back up a container, then run ``update`` inside it.

    A failed backup never blocks the update. The update command is typed into
    the guest shell after a fixed delay; there is no readiness probing.
    """

    start_label = "Starting update for container {guest_id}..."
    end_label = "Update completed with exit code: {code}"
    failure_label = "Failed to start update"

    def __init__(self, *args, backup: Optional[BackupWorkflow] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.backup = backup or BackupWorkflow(
            self.sessions,
            self.registry,
            self.ssh,
            local_spawner=self.local_spawner,
            config=self.config,
        )

    async def before_session(
        self, session: ExecutionSession, message: ControlMessage, guest_id: str
    ) -> None:
        if not (message.backup_storage and message.mode is ExecutionMode.REMOTE and message.server):
            return

        await self.send(
            session,
            MessageType.START,
            f"Starting backup before update for container {guest_id}...",
        )
        result = await self._run_backup(session, message, guest_id)
        if result.success:
            await self.send(
                session, MessageType.OUTPUT, "\n✅ Backup completed successfully. Starting update...\n"
            )
        else:
            await self.send(
                session,
                MessageType.OUTPUT,
                "\n⚠️ Backup failed, but proceeding with update as requested...\n",
            )
        await asyncio.sleep(self.config.backup_settle_seconds)

    async def _run_backup(
        self, session: ExecutionSession, message: ControlMessage, guest_id: str
    ) -> BackupResult:
        backup_id = f"backup_{session.execution_id}"
        try:
            storage = require_storage(message.backup_storage)
            backup_session = self.sessions.open(backup_id, session.channel)
        except (WorkflowValidationError, SessionAlreadyRunningError) as exc:
            await self.send(
                session,
                MessageType.OUTPUT,
                f"\n⚠️ Backup error: {exc}. Proceeding with update...\n",
            )
            return BackupResult(success=False)

        try:
            assert message.server is not None
            return await self.backup.backup(backup_session, message.server, guest_id, storage)
        finally:
            self.sessions.remove(backup_id, backup_session)

    async def after_start(self, process: ProcessAdapter) -> None:
        await asyncio.sleep(self.config.update_settle_seconds)
        process.write(UPDATE_COMMAND)


__all__ = ["ShellWorkflow", "UpdateWorkflow", "enter_command"]
