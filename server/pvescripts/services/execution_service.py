"""Script execution channel: control message dispatch and session lifecycle."""
import asyncio
import json
import logging
import uuid
from typing import Any, Coroutine, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from ..core.config import Settings, settings
from ..core.models import Action, ControlMessage, MessageType, OutboundMessage
from .backup_workflow import BackupWorkflow
from .clone_workflow import CloneWorkflow
from .process_adapter import spawn_local
from .script_registry import ScriptRegistry, script_registry
from .script_run_workflow import ScriptRunWorkflow
from .session_registry import ExecutionSession, SessionAlreadyRunningError, SessionRegistry
from .ssh_service import SSHService, ssh_service
from .update_workflow import ShellWorkflow, UpdateWorkflow
from .workflow_base import LocalSpawner, Workflow

logger = logging.getLogger(__name__)


class ClientChannel:
    """One connected browser on the execution WebSocket."""

    def __init__(self, websocket: WebSocket, channel_id: Optional[str] = None):
        self.websocket = websocket
        self.id = channel_id or str(uuid.uuid4())
        self.closed = False

    async def send(self, kind: MessageType, data: str) -> bool:
        """Send an outbound message; dropped silently once the socket is gone."""
        if self.closed or self.websocket.client_state != WebSocketState.CONNECTED:
            return False
        message = OutboundMessage(type=kind, data=data)
        try:
            await self.websocket.send_json(message.model_dump(mode="json"))
            return True
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.error(f"Error sending message to {self.id}: {e}")
            self.closed = True
            return False


class ScriptExecutionHandler:
    """Routes control messages to workflows and owns their tasks."""

    def __init__(
        self,
        sessions: Optional[SessionRegistry] = None,
        registry: Optional[ScriptRegistry] = None,
        ssh: Optional[SSHService] = None,
        *,
        local_spawner: LocalSpawner = spawn_local,
        config: Optional[Settings] = None,
    ):
        self.config = config or settings
        if sessions is None:
            sessions = SessionRegistry(capacity=self.config.output_log_limit)
        self.sessions = sessions
        self.registry = registry or script_registry
        self.ssh = ssh or ssh_service

        deps = (self.sessions, self.registry, self.ssh)
        options = {"local_spawner": local_spawner, "config": self.config}
        self.script_run = ScriptRunWorkflow(*deps, **options)
        self.backup = BackupWorkflow(*deps, **options)
        self.update = UpdateWorkflow(*deps, backup=self.backup, **options)
        self.shell = ShellWorkflow(*deps, **options)
        self.clone = CloneWorkflow(*deps, **options)

        self._tasks: Dict[str, Set[asyncio.Task]] = {}

    @property
    def active_sessions(self) -> int:
        return len(self.sessions)

    async def serve(self, websocket: WebSocket) -> None:
        """Run one client connection until it disconnects."""
        client_ip = websocket.client.host if websocket.client else "unknown"
        await websocket.accept()
        channel = ClientChannel(websocket)
        logger.info(f"Script execution client connected: {channel.id} from {client_ip}")

        try:
            while True:
                try:
                    raw = await websocket.receive_text()
                except WebSocketDisconnect:
                    logger.info(f"Client {channel.id} disconnected")
                    break
                await self.handle_raw(channel, raw)
        finally:
            channel.closed = True
            await self.close_channel(channel)

    async def handle_raw(self, channel: ClientChannel, raw: str) -> None:
        """Parse one inbound frame and dispatch it."""
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Invalid JSON from client {channel.id}")
            await channel.send(MessageType.ERROR, "Invalid message format")
            return

        if not isinstance(payload, dict):
            await channel.send(MessageType.ERROR, "Invalid message format")
            return

        if payload.get("action") not in [action.value for action in Action]:
            await channel.send(MessageType.ERROR, "Unknown action")
            return

        try:
            message = ControlMessage.model_validate(payload)
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in exc.errors()
            )
            logger.warning(f"Rejected message from client {channel.id}: {details}")
            await channel.send(MessageType.ERROR, f"Invalid message format: {details}")
            return

        await self.handle_message(channel, message)

    async def handle_message(self, channel: ClientChannel, message: ControlMessage) -> None:
        """Dispatch a validated control message."""
        if message.action is Action.START:
            await self._start(channel, message)
        elif message.action is Action.STOP:
            await self.stop(message.execution_id)
        elif message.action is Action.INPUT:
            self.send_input(message.execution_id, message.input)
        else:  # pragma: no cover - Action is a closed set
            await channel.send(MessageType.ERROR, "Unknown action")

    def select_workflow(self, message: ControlMessage) -> Workflow:
        """Pick the workflow for a ``start`` message, most specific first."""
        if message.is_clone:
            return self.clone
        if message.is_backup:
            return self.backup
        if message.is_update:
            return self.update
        if message.is_shell:
            return self.shell
        return self.script_run

    async def _start(self, channel: ClientChannel, message: ControlMessage) -> None:
        if not message.script_path or not message.execution_id:
            await channel.send(MessageType.ERROR, "Missing scriptPath or executionId")
            return

        try:
            session = self.sessions.open(message.execution_id, channel)
        except SessionAlreadyRunningError:
            logger.info(f"Rejected duplicate start for {message.execution_id}")
            await channel.send(MessageType.ERROR, "Script execution already running")
            return

        workflow = self.select_workflow(message)
        logger.info(
            f"Starting {type(workflow).__name__} for {message.execution_id} "
            f"(mode={message.mode.value}, channel={channel.id})"
        )
        self._spawn(channel, self._run_workflow(workflow, session, message), message.execution_id)

    async def _run_workflow(
        self, workflow: Workflow, session: ExecutionSession, message: ControlMessage
    ) -> None:
        try:
            await workflow.run(session, message)
        except asyncio.CancelledError:
            logger.info(f"Workflow for {session.execution_id} cancelled")
            raise
        except Exception as e:
            logger.exception(f"Workflow for {session.execution_id} failed")
            await session.channel.send(MessageType.ERROR, f"Execution failed: {e}")
        finally:
            self.sessions.remove(session.execution_id, session)
            session.kill()

    def _spawn(self, channel: ClientChannel, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=f"workflow:{name}")
        tasks = self._tasks.setdefault(channel.id, set())
        tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            tasks.discard(finished)
            if not tasks:
                self._tasks.pop(channel.id, None)

        task.add_done_callback(_done)

    async def stop(self, execution_id: Optional[str]) -> None:
        """Kill the current process of a session; unknown ids are ignored."""
        session = self.sessions.get(execution_id)
        if session is None:
            return
        session.stopped = True
        session.kill()
        self.sessions.remove(session.execution_id, session)
        logger.info(f"Execution {session.execution_id} stopped by user")
        await session.channel.send(MessageType.END, "Script execution stopped by user")

    def send_input(self, execution_id: Optional[str], text: Optional[str]) -> None:
        """Forward input to a running session; dropped when nothing is running."""
        if text is None:
            return
        session = self.sessions.get(execution_id)
        if session is None or session.process is None:
            return
        session.process.write(text)

    async def close_channel(self, channel: ClientChannel) -> None:
        """Cancel the channel's workflows and kill its sessions."""
        tasks = list(self._tasks.pop(channel.id, set()))
        for task in tasks:
            task.cancel()
        self.sessions.close_channel(channel)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Script execution client closed: {channel.id}")


# Global script execution handler
execution_handler = ScriptExecutionHandler()
