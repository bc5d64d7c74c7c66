"""Multi-replica cloning of a container or VM.

The workflow is strictly sequential::

    StopSource -> (AllocateId -> CloneReplica) x N -> StartSource
        -> StartAllReplicas -> PersistAllReplicas

``pvesh get /cluster/nextid`` only reports the next free id, it does not
reserve it, so every allocation happens right before the clone that consumes
it. Allocation and clone failures abort the remaining replicas; replicas that
were already cloned are left in place. Stop and start failures are only
reported.
"""
from __future__ import annotations

import logging
import re
import shlex
from typing import Optional

from pydantic import ValidationError

from ..core.guest_config import parse_container_config, resolve_guest_hostname
from ..core.models import (
    CloneRequest,
    CloneResult,
    ControlMessage,
    ExecutionMode,
    GuestType,
    InstallStatus,
    MessageType,
    ServerInfo,
)
from .process_adapter import ProcessStartError
from .session_registry import ExecutionSession
from .workflow_base import StepResult, Workflow

logger = logging.getLogger(__name__)

NEXT_ID_COMMAND = "pvesh get /cluster/nextid"
_NEXT_ID_RE = re.compile(r"^\d+$")


class CloneWorkflowError(RuntimeError):
    """Raised by fatal clone steps (id allocation, clone command)."""


def clone_command(request: CloneRequest, new_id: str, hostname: str) -> str:
    name_flag = "--hostname" if request.guest_type is GuestType.CONTAINER else "--name"
    return (
        f"{request.guest_type.cli} clone {request.source_id} {new_id} "
        f"{name_flag} {shlex.quote(hostname)} --storage {shlex.quote(request.storage)}"
    )


def power_command(guest_type: GuestType, action: str, guest_id: str) -> str:
    return f"{guest_type.cli} {action} {guest_id}"


def config_command(guest_type: GuestType, guest_id: str) -> str:
    path = f"{guest_type.config_dir}/{guest_id}.conf"
    return f"cat {shlex.quote(path)} 2>/dev/null || echo ''"


def build_clone_request(message: ControlMessage) -> CloneRequest:
    """Build a validated ``CloneRequest`` from a control message."""

    return CloneRequest(
        source_id=(message.container_id or "").strip(),
        guest_type=message.container_type,
        storage=(message.storage or "").strip(),
        count=message.clone_count,
        hostnames=message.hostnames or [],
    )


class CloneWorkflow(Workflow):
    """Clone a source guest ``count`` times and register every replica."""

    async def run(self, session: ExecutionSession, message: ControlMessage) -> None:
        server = message.server
        if server is None:
            await self.send(session, MessageType.ERROR, "Clone requires server details")
            return
        try:
            request = build_clone_request(message)
        except ValidationError as exc:
            details = "; ".join(error["msg"] for error in exc.errors())
            await self.send(session, MessageType.ERROR, f"Invalid clone request: {details}")
            return

        label = request.guest_type.label
        await self.send(
            session,
            MessageType.START,
            f"Starting clone operation: Creating {request.count} clone(s) of "
            f"{label} {request.source_id}...",
        )

        try:
            result = await self.clone(session, server, request)
        except CloneWorkflowError as exc:
            logger.error("Clone of %s %s failed: %s", label, request.source_id, exc)
            self.sessions.remove(session.execution_id, session)
            await self.send(
                session,
                MessageType.ERROR,
                f"\n\n[Clone operation failed!]\nError: {exc}\n",
            )
            return

        self.sessions.remove(session.execution_id, session)
        await self.send(
            session,
            MessageType.OUTPUT,
            f"\n\n[Clone operation completed successfully!]\n"
            f"Created {len(result.cloned_ids)} clone(s) of {label} {request.source_id}.\n",
        )
        if not session.stopped:
            await self.send(
                session,
                MessageType.END,
                f"Clone operation finished: {', '.join(result.cloned_ids)}",
            )

    async def clone(
        self, session: ExecutionSession, server: ServerInfo, request: CloneRequest
    ) -> CloneResult:
        total = request.total_steps
        label = request.guest_type.label
        result = CloneResult()

        # Step 1: stop the source so the clone is consistent
        step = f"[Step 1/{total}]"
        await self._progress(session, f"{step} Stopping source {label} {request.source_id}...")
        stop = await self._best_effort(
            session, server, power_command(request.guest_type, "stop", request.source_id)
        )
        if stop is not None and stop.success:
            await self._progress(session, f"{step} Source {label} stopped successfully.")
        else:
            code = stop.code if stop is not None else None
            await self._progress(
                session,
                f"{step} Stop command completed with exit code {code} "
                "(container may already be stopped).",
            )

        # Steps 2..N+1: allocate an id, then clone into it
        for index, hostname in enumerate(request.hostnames):
            step = f"[Step {index + 2}/{total}]"
            number = index + 1
            await self._progress(session, f"{step} Getting next available ID for clone {number}...")
            new_id = await self._allocate_id(session, server, step)
            await self._progress(session, f"{step} Got next ID: {new_id}")

            await self._progress(
                session,
                f"{step} Cloning {label} {request.source_id} to {new_id} with hostname {hostname}...",
            )
            cloned = await self._fatal_step(
                session, server, clone_command(request, new_id, hostname), f"Clone {number}"
            )
            if not cloned.success:
                raise CloneWorkflowError(f"Clone {number} failed with exit code: {cloned.code}")
            result.cloned_ids.append(new_id)
            await self._progress(session, f"{step} Clone {number} created successfully.")

        # Step N+2: restart the source
        step = f"[Step {request.count + 2}/{total}]"
        await self._progress(session, f"{step} Starting source {label} {request.source_id}...")
        started = await self._best_effort(
            session, server, power_command(request.guest_type, "start", request.source_id)
        )
        if started is not None and started.success:
            await self._progress(session, f"{step} Source {label} started successfully.")
        else:
            code = started.code if started is not None else None
            await self._progress(session, f"{step} Start command completed with exit code {code}.")

        # Step N+3: start every replica
        step = f"[Step {request.count + 3}/{total}]"
        await self._progress(session, f"{step} Starting cloned {label}(s)...")
        for number, new_id in enumerate(result.cloned_ids, start=1):
            started = await self._best_effort(
                session, server, power_command(request.guest_type, "start", new_id)
            )
            if started is not None and started.success:
                await self._progress(session, f"Clone {number} (ID: {new_id}) started successfully.")
            else:
                code = started.code if started is not None else None
                await self._progress(
                    session, f"Clone {number} (ID: {new_id}) start completed with exit code {code}."
                )

        # Step N+4: register the replicas
        step = f"[Step {request.count + 4}/{total}]"
        await self._progress(session, f"{step} Adding cloned {label}(s) to database...")
        for index, new_id in enumerate(result.cloned_ids):
            record_id = await self._persist_replica(
                session, server, request, index, new_id, request.hostnames[index]
            )
            if record_id is not None:
                result.record_ids.append(record_id)

        return result

    async def _progress(self, session: ExecutionSession, text: str) -> None:
        await self.send(session, MessageType.OUTPUT, f"\n{text}\n")

    async def _allocate_id(self, session: ExecutionSession, server: ServerInfo, step: str) -> str:
        try:
            allocation = await self.run_remote_step(session, server, NEXT_ID_COMMAND, stream=False)
        except ProcessStartError as exc:
            await self.send(session, MessageType.ERROR, f"\n{step} Failed to get next ID: {exc}\n")
            raise CloneWorkflowError(f"Failed to get next ID: {exc}") from exc

        if not allocation.success:
            reason = f"pvesh command failed with exit code {allocation.code}"
        else:
            new_id = allocation.output.strip()
            if _NEXT_ID_RE.match(new_id):
                return new_id
            reason = f"Invalid next ID received: {new_id!r}"

        await self.send(session, MessageType.ERROR, f"\n{step} Failed to get next ID: {reason}\n")
        raise CloneWorkflowError(reason)

    async def _fatal_step(
        self, session: ExecutionSession, server: ServerInfo, command: str, label: str
    ) -> StepResult:
        try:
            return await self.run_remote_step(session, server, command)
        except ProcessStartError as exc:
            raise CloneWorkflowError(f"{label} could not start: {exc}") from exc

    async def _best_effort(
        self, session: ExecutionSession, server: ServerInfo, command: str
    ) -> Optional[StepResult]:
        try:
            return await self.run_remote_step(session, server, command)
        except ProcessStartError as exc:
            logger.warning("Command %r could not start: %s", command, exc)
            await self.send(session, MessageType.OUTPUT, f"\n{command}: {exc}\n")
            return None

    async def _persist_replica(
        self,
        session: ExecutionSession,
        server: ServerInfo,
        request: CloneRequest,
        index: int,
        new_id: str,
        requested_hostname: str,
    ) -> Optional[int]:
        """Register one replica; failures are reported and do not stop the others."""

        try:
            config = await self.run_remote_step(
                session, server, config_command(request.guest_type, new_id), stream=False
            )
            content = config.output
            hostname = resolve_guest_hostname(content, request.guest_type, new_id, requested_hostname)
            record_id = await self.registry.create(
                hostname,
                f"cloned/{hostname}",
                ExecutionMode.REMOTE,
                server.id,
                container_id=new_id,
                status=InstallStatus.SUCCESS,
                output_log=f"Cloned {request.guest_type.label}",
            )
            if request.guest_type is GuestType.CONTAINER and content.strip():
                await self.registry.save_container_config(
                    record_id, parse_container_config(content)
                )
        except Exception as exc:
            logger.exception("Failed to register clone %s (ID: %s)", index + 1, new_id)
            await self.send(
                session,
                MessageType.ERROR,
                f"\nError adding clone {index + 1} (ID: {new_id}) to database: {exc}\n",
            )
            return None

        await self._progress(
            session,
            f"Clone {index + 1} (ID: {new_id}, Hostname: {hostname}) added to database successfully.",
        )
        return record_id


__all__ = [
    "CloneWorkflow",
    "CloneWorkflowError",
    "build_clone_request",
    "clone_command",
    "config_command",
    "power_command",
]
