"""In-memory registry of running execution sessions."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Deque, Dict, List, Optional

from ..core.config import settings
from .process_adapter import ProcessAdapter

if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .execution_service import ClientChannel

logger = logging.getLogger(__name__)


class SessionAlreadyRunningError(RuntimeError):
    """Raised when a session with the same execution id is still running."""

    def __init__(self, execution_id: str):
        super().__init__(f"Execution {execution_id} is already running")
        self.execution_id = execution_id


class OutputBuffer:
    """Bounded text buffer that keeps only the most recent characters."""

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity if capacity is not None else settings.output_log_limit
        self._chars: Deque[str] = deque(maxlen=self.capacity)

    def append(self, text: str) -> None:
        if text:
            self._chars.extend(text)

    def getvalue(self) -> str:
        return "".join(self._chars)

    def __len__(self) -> int:
        return len(self._chars)


@dataclass(eq=False)
class ExecutionSession:
    """One active execution tracked by its execution id."""

    execution_id: str
    channel: "ClientChannel"
    process: Optional[ProcessAdapter] = None
    record_id: Optional[int] = None
    output: OutputBuffer = field(default_factory=OutputBuffer)
    stopped: bool = False

    def attach(self, process: ProcessAdapter) -> ProcessAdapter:
        """Make ``process`` current; a process started after a stop is killed at once."""
        self.process = process
        if self.stopped:
            logger.info(
                "Execution %s was stopped while starting; killing %s",
                self.execution_id,
                process.description,
            )
            process.kill()
        return process

    def kill(self) -> None:
        if self.process is not None:
            self.process.kill()


class SessionRegistry:
    """Maps execution ids to sessions; at most one session per id."""

    def __init__(self, capacity: Optional[int] = None) -> None:
        self.capacity = capacity
        self._sessions: Dict[str, ExecutionSession] = {}

    def open(self, execution_id: str, channel: "ClientChannel") -> ExecutionSession:
        """Reserve ``execution_id`` for ``channel``.

        Raises ``SessionAlreadyRunningError`` without touching the existing
        session when the id is taken.
        """

        if execution_id in self._sessions:
            raise SessionAlreadyRunningError(execution_id)
        session = ExecutionSession(
            execution_id=execution_id,
            channel=channel,
            output=OutputBuffer(self.capacity),
        )
        self._sessions[execution_id] = session
        logger.debug("Opened session %s for channel %s", execution_id, channel.id)
        return session

    def get(self, execution_id: Optional[str]) -> Optional[ExecutionSession]:
        if not execution_id:
            return None
        return self._sessions.get(execution_id)

    def remove(self, execution_id: str, session: Optional[ExecutionSession] = None) -> bool:
        """Remove a session; removing an absent or replaced session is a no-op."""

        current = self._sessions.get(execution_id)
        if current is None:
            return False
        if session is not None and current is not session:
            return False
        del self._sessions[execution_id]
        logger.debug("Removed session %s", execution_id)
        return True

    def sessions_for_channel(self, channel: "ClientChannel") -> List[ExecutionSession]:
        return [session for session in self._sessions.values() if session.channel is channel]

    def close_channel(self, channel: "ClientChannel") -> int:
        """Kill and remove every session owned by ``channel``."""

        sessions = self.sessions_for_channel(channel)
        for session in sessions:
            session.stopped = True
            session.kill()
            self.remove(session.execution_id, session)
        if sessions:
            logger.info("Cleaned up %d session(s) for channel %s", len(sessions), channel.id)
        return len(sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, execution_id: object) -> bool:
        return execution_id in self._sessions


__all__ = [
    "ExecutionSession",
    "OutputBuffer",
    "SessionAlreadyRunningError",
    "SessionRegistry",
]
