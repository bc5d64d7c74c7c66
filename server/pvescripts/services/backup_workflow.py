"""vzdump backups of a guest, standalone or ahead of an update."""
from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from typing import Optional

from ..core.models import ControlMessage, ExecutionMode, MessageType, ServerInfo
from .process_adapter import ProcessStartError
from .session_registry import ExecutionSession
from .workflow_base import Workflow, WorkflowValidationError, require_guest_id, require_storage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackupResult:
    """Outcome of one backup command."""

    success: bool
    exit_code: Optional[int] = None


def backup_command(guest_id: str, storage: str) -> str:
    return f"vzdump {guest_id} --storage {shlex.quote(storage)} --mode snapshot"


class BackupWorkflow(Workflow):
    """Back up a guest to a storage target over SSH."""

    async def run(self, session: ExecutionSession, message: ControlMessage) -> None:
        """Handle a standalone backup request and close the session when done."""

        if message.mode is not ExecutionMode.REMOTE or message.server is None:
            await self.send(session, MessageType.ERROR, "Backup is only supported via SSH")
            return

        try:
            guest_id = require_guest_id(message.container_id)
            storage = require_storage(message.storage)
        except WorkflowValidationError as exc:
            await self.send(session, MessageType.ERROR, f"Failed to start backup: {exc}")
            return

        await self.send(
            session,
            MessageType.START,
            f"Starting backup for container {guest_id} to storage {storage}...",
        )
        result = await self.backup(session, message.server, guest_id, storage)
        self.sessions.remove(session.execution_id, session)
        if not session.stopped:
            outcome = "completed" if result.success else "failed"
            await self.send(
                session, MessageType.END, f"Backup {outcome} with exit code: {result.exit_code}"
            )

    async def backup(
        self,
        session: ExecutionSession,
        server: ServerInfo,
        guest_id: str,
        storage: str,
    ) -> BackupResult:
        """Run the backup command and wait for its single completion signal.

        Completion is reported to the client as a regular ``output`` message so
        a combined terminal view stays open for the steps that follow.
        """

        completion: asyncio.Future[BackupResult] = asyncio.get_running_loop().create_future()

        def complete(result: BackupResult) -> None:
            if not completion.done():
                completion.set_result(result)

        async def on_data(text: str) -> None:
            session.output.append(text)
            await self.send(session, MessageType.OUTPUT, text)

        async def on_exit(code: Optional[int], sig: Optional[str]) -> None:
            success = code == 0
            if not success:
                await self.send(session, MessageType.ERROR, f"Backup failed with exit code: {code}")
            outcome = "completed" if success else "failed"
            await self.send(
                session,
                MessageType.OUTPUT,
                f"\n[Backup {outcome} with exit code: {code}]\n",
            )
            complete(BackupResult(success=success, exit_code=code))

        try:
            process = await self.ssh.execute_command(
                server,
                backup_command(guest_id, storage),
                on_data,
                on_exit,
                description=f"backup:{guest_id}",
            )
        except ProcessStartError as exc:
            logger.error("Backup of %s could not start: %s", guest_id, exc)
            await self.send(session, MessageType.ERROR, f"SSH backup execution failed: {exc}")
            complete(BackupResult(success=False))
            return await completion

        session.attach(process)
        result = await completion
        logger.info("Backup of %s finished (success=%s)", guest_id, result.success)
        return result


__all__ = ["BackupResult", "BackupWorkflow", "backup_command"]
