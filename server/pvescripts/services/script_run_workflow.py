"""Run a helper script and track its outcome in the Script Registry."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional

from ..core.models import (
    ControlMessage,
    ExecutionMode,
    InstallStatus,
    MessageType,
    ServiceEndpoint,
)
from ..core.scanners import extract_guest_id, extract_service_endpoint
from .process_adapter import ProcessStartError, ScriptPathError, resolve_script_path
from .script_registry import safe_update
from .session_registry import ExecutionSession
from .workflow_base import Workflow, WorkflowValidationError, require_server

logger = logging.getLogger(__name__)


@dataclass
class _Discovered:
    guest_id: Optional[str] = None
    endpoint: Optional[ServiceEndpoint] = None


def script_name_from_path(script_path: str) -> str:
    """Return the basename of a script path, accepting either separator."""

    name = PurePosixPath(script_path.replace("\\", "/")).name
    return name or "Unknown Script"


class ScriptRunWorkflow(Workflow):
    """Execute a script from the scripts directory, locally or over SSH."""

    async def run(self, session: ExecutionSession, message: ControlMessage) -> None:
        script_path = message.script_path or ""
        mode = message.mode
        server = message.server

        session.record_id = await self.create_record(
            script_name_from_path(script_path), script_path, mode, server
        )

        try:
            require_server(mode, server)
            resolved = resolve_script_path(script_path, self.config.get_scripts_dir())
        except (ScriptPathError, WorkflowValidationError) as exc:
            logger.warning("Rejected script execution %s: %s", session.execution_id, exc)
            await safe_update(self.registry, session.record_id, status=InstallStatus.FAILED)
            await self.send(session, MessageType.ERROR, str(exc))
            return

        discovered = _Discovered()

        async def on_data(text: str) -> None:
            session.output.append(text)
            await self._record_discoveries(session, discovered, text)
            await self.send(session, MessageType.OUTPUT, text)

        async def on_exit(code: Optional[int], sig: Optional[str]) -> None:
            self.sessions.remove(session.execution_id, session)
            status = InstallStatus.SUCCESS if code == 0 else InstallStatus.FAILED
            await safe_update(
                self.registry,
                session.record_id,
                status=status,
                output_log=session.output.getvalue(),
            )
            if session.stopped:
                return
            if mode is ExecutionMode.REMOTE:
                summary = f"SSH script execution finished with code: {code}"
            else:
                summary = f"Script execution finished with code: {code}, signal: {sig}"
            await self.send(session, MessageType.END, summary)

        try:
            if mode is ExecutionMode.REMOTE:
                assert server is not None
                await self.send(
                    session,
                    MessageType.START,
                    f"Starting SSH execution of {script_path} on {server.name} ({server.ip})",
                )
                process = await self.ssh.execute_script(server, resolved, on_data, on_exit)
            else:
                await self.send(session, MessageType.START, f"Starting execution of {script_path}")
                process = await self.local_spawner(
                    ["bash", str(resolved)],
                    cwd=str(self.config.get_scripts_dir()),
                    description=f"script:{resolved.name}",
                    on_data=on_data,
                    on_exit=on_exit,
                )
        except ProcessStartError as exc:
            logger.error("Failed to start %s: %s", script_path, exc)
            await safe_update(self.registry, session.record_id, status=InstallStatus.FAILED)
            prefix = "Failed to start SSH execution" if mode is ExecutionMode.REMOTE else "Failed to start script"
            await self.send(session, MessageType.ERROR, f"{prefix}: {exc}")
            return

        session.attach(process)
        await process.wait()

    async def _record_discoveries(
        self, session: ExecutionSession, discovered: _Discovered, text: str
    ) -> None:
        guest_id = extract_guest_id(text)
        if guest_id and guest_id != discovered.guest_id:
            discovered.guest_id = guest_id
            logger.info("Detected guest id %s for %s", guest_id, session.execution_id)
            await safe_update(self.registry, session.record_id, container_id=guest_id)

        endpoint = extract_service_endpoint(text)
        if endpoint and endpoint != discovered.endpoint:
            discovered.endpoint = endpoint
            logger.info(
                "Detected web UI %s:%s for %s", endpoint.ip, endpoint.port, session.execution_id
            )
            await safe_update(
                self.registry,
                session.record_id,
                web_ui_ip=endpoint.ip,
                web_ui_port=endpoint.port,
            )


__all__ = ["ScriptRunWorkflow", "script_name_from_path"]
