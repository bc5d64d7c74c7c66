"""Shared plumbing for the execution workflows."""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from ..core.config import Settings, settings
from ..core.models import (
    GUEST_ID_PATTERN,
    STORAGE_PATTERN,
    ControlMessage,
    ExecutionMode,
    MessageType,
    ServerInfo,
)
from .process_adapter import (
    DataCallback,
    ExitCallback,
    ProcessAdapter,
    ProcessExit,
    spawn_local,
)
from .script_registry import ScriptRegistry
from .session_registry import ExecutionSession, SessionRegistry
from .ssh_service import SSHService

logger = logging.getLogger(__name__)

LocalSpawner = Callable[..., Awaitable[ProcessAdapter]]

_GUEST_ID_RE = re.compile(GUEST_ID_PATTERN)
_STORAGE_RE = re.compile(STORAGE_PATTERN)


class WorkflowValidationError(ValueError):
    """Raised when a control message lacks what a workflow needs."""


@dataclass
class StepResult:
    """Exit status and collected output of one workflow step."""

    exit: ProcessExit
    output: str = ""

    @property
    def success(self) -> bool:
        return self.exit.success

    @property
    def code(self) -> Optional[int]:
        return self.exit.code


def require_guest_id(value: Optional[str]) -> str:
    candidate = (value or "").strip()
    if not _GUEST_ID_RE.match(candidate):
        raise WorkflowValidationError(f"Invalid container id: {value!r}")
    return candidate


def require_storage(value: Optional[str]) -> str:
    candidate = (value or "").strip()
    if not _STORAGE_RE.match(candidate):
        raise WorkflowValidationError(f"Invalid storage: {value!r}")
    return candidate


def require_server(mode: ExecutionMode, server: Optional[ServerInfo]) -> Optional[ServerInfo]:
    if mode is ExecutionMode.REMOTE and server is None:
        raise WorkflowValidationError("Remote execution requires server details")
    return server


class Workflow(ABC):
    """Base class holding the collaborators every workflow needs."""

    def __init__(
        self,
        sessions: SessionRegistry,
        registry: ScriptRegistry,
        ssh: SSHService,
        *,
        local_spawner: LocalSpawner = spawn_local,
        config: Optional[Settings] = None,
    ) -> None:
        self.sessions = sessions
        self.registry = registry
        self.ssh = ssh
        self.local_spawner = local_spawner
        self.config = config or settings

    @abstractmethod
    async def run(self, session: ExecutionSession, message: ControlMessage) -> None:
        """Drive the workflow for one ``start`` message."""

    async def send(self, session: ExecutionSession, kind: MessageType, data: str) -> None:
        await session.channel.send(kind, data)

    async def create_record(
        self,
        script_name: str,
        script_path: str,
        mode: ExecutionMode,
        server: Optional[ServerInfo] = None,
        **fields: Any,
    ) -> Optional[int]:
        """Create a registry record; failures are logged and yield ``None``."""

        try:
            return await self.registry.create(
                script_name,
                script_path,
                mode,
                server.id if server is not None else None,
                **fields,
            )
        except Exception:
            logger.exception("Failed to create script record for %s", script_name)
            return None

    async def launch(
        self,
        session: ExecutionSession,
        *,
        mode: ExecutionMode,
        server: Optional[ServerInfo],
        command: str,
        on_data: Optional[DataCallback] = None,
        on_exit: Optional[ExitCallback] = None,
        description: Optional[str] = None,
    ) -> ProcessAdapter:
        """Start a shell ``command`` locally in a pty or on the remote host.

        The started process becomes the session's current process.
        """

        if mode is ExecutionMode.REMOTE:
            assert server is not None
            process: ProcessAdapter = await self.ssh.execute_command(
                server,
                command,
                on_data,
                on_exit,
                description=description,
            )
        else:
            process = await self.local_spawner(
                ["bash", "-c", command],
                cwd=str(self.config.get_scripts_dir()),
                description=description,
                on_data=on_data,
                on_exit=on_exit,
            )
        session.attach(process)
        return process

    async def run_remote_step(
        self,
        session: ExecutionSession,
        server: ServerInfo,
        command: str,
        *,
        stream: bool = True,
    ) -> StepResult:
        """Run one remote command as the session's current step and wait for it.

        With ``stream`` the output is forwarded to the client; otherwise it is
        only collected for the caller.
        """

        chunks: List[str] = []

        async def on_data(text: str) -> None:
            chunks.append(text)
            if stream:
                session.output.append(text)
                await self.send(session, MessageType.OUTPUT, text)

        process = await self.ssh.execute_command(
            server,
            command,
            on_data,
            use_pty=False,
            description=f"{session.execution_id}:{command.split(' ', 1)[0]}",
        )
        session.attach(process)
        result = await process.wait()
        return StepResult(exit=result, output="".join(chunks))


__all__ = [
    "LocalSpawner",
    "StepResult",
    "Workflow",
    "WorkflowValidationError",
    "require_guest_id",
    "require_server",
    "require_storage",
]
