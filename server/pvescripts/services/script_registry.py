"""Script Registry collaborator: durable record of install and clone attempts."""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.models import ContainerConfig, ExecutionMode, ScriptRecord

logger = logging.getLogger(__name__)


class ScriptRegistryError(RuntimeError):
    """Raised when a registry operation cannot be completed."""


class ScriptRegistry(ABC):
    """Narrow interface the execution engine uses to persist attempts.

    The engine only writes through this interface; it never reads records
    back into session state.
    """

    @abstractmethod
    async def create(
        self,
        script_name: str,
        script_path: str,
        mode: ExecutionMode,
        server_id: Optional[int] = None,
        **fields: Any,
    ) -> int:
        """Create an ``in_progress`` record and return its id."""

    @abstractmethod
    async def update(self, record_id: int, **fields: Any) -> None:
        """Update fields of an existing record."""

    @abstractmethod
    async def save_container_config(self, record_id: int, config: ContainerConfig) -> None:
        """Persist the structured LXC configuration of a record's guest."""


class InMemoryScriptRegistry(ScriptRegistry):
    """Process-local registry used when no database backend is attached."""

    def __init__(self) -> None:
        self._records: Dict[int, ScriptRecord] = {}
        self._container_configs: Dict[int, ContainerConfig] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def create(
        self,
        script_name: str,
        script_path: str,
        mode: ExecutionMode,
        server_id: Optional[int] = None,
        **fields: Any,
    ) -> int:
        async with self._lock:
            record_id = self._next_id
            self._next_id += 1
            try:
                record = ScriptRecord(
                    id=record_id,
                    script_name=script_name,
                    script_path=script_path,
                    execution_mode=mode,
                    server_id=server_id,
                    **fields,
                )
            except ValueError as exc:
                raise ScriptRegistryError(f"Invalid record for {script_name}: {exc}") from exc
            self._records[record_id] = record

        logger.debug("Created script record %s for %s", record_id, script_name)
        return record_id

    async def update(self, record_id: int, **fields: Any) -> None:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise ScriptRegistryError(f"Script record {record_id} not found")
            unknown = set(fields) - set(ScriptRecord.model_fields)
            if unknown:
                raise ScriptRegistryError(
                    f"Unknown script record field(s): {', '.join(sorted(unknown))}"
                )
            fields["updated_at"] = datetime.utcnow()
            self._records[record_id] = record.model_copy(update=fields)

    async def save_container_config(self, record_id: int, config: ContainerConfig) -> None:
        async with self._lock:
            if record_id not in self._records:
                raise ScriptRegistryError(f"Script record {record_id} not found")
            self._container_configs[record_id] = config

    def get(self, record_id: int) -> Optional[ScriptRecord]:
        return self._records.get(record_id)

    def get_container_config(self, record_id: int) -> Optional[ContainerConfig]:
        return self._container_configs.get(record_id)

    def list_records(self) -> List[ScriptRecord]:
        return [self._records[key] for key in sorted(self._records)]


async def safe_update(registry: ScriptRegistry, record_id: Optional[int], **fields: Any) -> None:
    """Update a record, logging failures instead of raising."""

    if record_id is None:
        return
    try:
        await registry.update(record_id, **fields)
    except Exception:
        logger.exception("Failed to update script record %s", record_id)


# Default registry used by the application
script_registry = InMemoryScriptRegistry()

__all__ = [
    "InMemoryScriptRegistry",
    "ScriptRegistry",
    "ScriptRegistryError",
    "safe_update",
    "script_registry",
]
