"""Data models for the application."""
import re
import time
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Shell-safe identifiers used when building pct/qm/vzdump commands
GUEST_ID_PATTERN = r"^\d+$"
STORAGE_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"
_HOSTNAME_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9.-]{0,251}[A-Za-z0-9])?$")


class Action(str, Enum):
    """Control actions accepted on the execution channel."""
    START = "start"
    STOP = "stop"
    INPUT = "input"


class MessageType(str, Enum):
    """Kinds of messages sent back to the client."""
    START = "start"
    OUTPUT = "output"
    ERROR = "error"
    END = "end"


class ExecutionMode(str, Enum):
    """Where a script or command runs."""
    LOCAL = "local"
    REMOTE = "remote"

    @classmethod
    def _missing_(cls, value):
        # Older clients send "ssh" for remote execution
        if isinstance(value, str) and value.lower() in {"ssh", "remote"}:
            return cls.REMOTE
        return None


class GuestType(str, Enum):
    """Proxmox guest flavours."""
    CONTAINER = "lxc"
    VM = "vm"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            lowered = value.lower()
            if lowered in {"container", "ct", "lxc"}:
                return cls.CONTAINER
            if lowered in {"vm", "qemu"}:
                return cls.VM
        return None

    @property
    def cli(self) -> str:
        """Management CLI for this guest type."""
        return "pct" if self is GuestType.CONTAINER else "qm"

    @property
    def label(self) -> str:
        return "LXC" if self is GuestType.CONTAINER else "VM"

    @property
    def config_dir(self) -> str:
        return "/etc/pve/lxc" if self is GuestType.CONTAINER else "/etc/pve/qemu-server"

    @property
    def hostname_key(self) -> str:
        """Config key that carries the guest's hostname."""
        return "hostname" if self is GuestType.CONTAINER else "name"


class InstallStatus(str, Enum):
    """Lifecycle of a Script Registry record."""
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class ServerInfo(BaseModel):
    """Remote hypervisor connection details supplied by the client."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    name: str = ""
    ip: str
    user: str
    password: Optional[str] = Field(default=None, repr=False)
    auth_type: str = "password"
    ssh_key: Optional[str] = Field(default=None, repr=False)
    ssh_key_passphrase: Optional[str] = Field(default=None, repr=False)
    ssh_port: int = Field(default=22, ge=1, le=65535)

    @field_validator("ssh_port", mode="before")
    @classmethod
    def _default_port(cls, value):
        if value in (None, ""):
            return 22
        return value

    @model_validator(mode="after")
    def _require_credentials(self) -> "ServerInfo":
        if not self.password and not self.ssh_key:
            raise ValueError("Server requires a password or SSH key material")
        return self

    @property
    def display_name(self) -> str:
        if self.name:
            return f"{self.name} ({self.ip})"
        return self.ip


class ControlMessage(BaseModel):
    """Inbound control message received on the execution channel."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    action: Action
    script_path: Optional[str] = None
    execution_id: Optional[str] = None
    input: Optional[str] = None
    mode: ExecutionMode = ExecutionMode.LOCAL
    server: Optional[ServerInfo] = None
    is_update: bool = False
    is_shell: bool = False
    is_backup: bool = False
    is_clone: bool = False
    container_id: Optional[str] = None
    storage: Optional[str] = None
    backup_storage: Optional[str] = None
    clone_count: Optional[int] = None
    hostnames: Optional[List[str]] = None
    container_type: Optional[GuestType] = None

    @field_validator("container_id", "execution_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("mode", mode="before")
    @classmethod
    def _default_mode(cls, value):
        if value in (None, ""):
            return ExecutionMode.LOCAL
        return value


class OutboundMessage(BaseModel):
    """Message streamed back to the client."""

    type: MessageType
    data: str
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))


class ServiceEndpoint(BaseModel):
    """Web UI address discovered in script output."""

    model_config = ConfigDict(frozen=True)

    ip: str
    port: int


class ScriptRecord(BaseModel):
    """A Script Registry row describing one install or clone attempt."""

    id: int
    script_name: str
    script_path: str
    container_id: Optional[str] = None
    server_id: Optional[int] = None
    execution_mode: ExecutionMode
    status: InstallStatus = InstallStatus.IN_PROGRESS
    output_log: str = ""
    web_ui_ip: Optional[str] = None
    web_ui_port: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ContainerConfig(BaseModel):
    """Structured subset of an LXC container configuration file."""

    hostname: Optional[str] = None
    arch: Optional[str] = None
    cores: Optional[int] = None
    memory: Optional[int] = None
    swap: Optional[int] = None
    onboot: Optional[int] = None
    ostype: Optional[str] = None
    unprivileged: Optional[int] = None
    tags: Optional[str] = None
    rootfs_storage: Optional[str] = None
    rootfs_size: Optional[str] = None


class CloneRequest(BaseModel):
    """Parameters of a multi-replica clone."""

    source_id: str = Field(..., pattern=GUEST_ID_PATTERN)
    guest_type: GuestType
    storage: str = Field(..., pattern=STORAGE_PATTERN)
    count: int = Field(..., ge=1)
    hostnames: List[str]

    @field_validator("hostnames")
    @classmethod
    def _validate_hostnames(cls, value: List[str]) -> List[str]:
        cleaned = [name.strip() for name in value]
        for name in cleaned:
            if not _HOSTNAME_RE.match(name):
                raise ValueError(f"Invalid hostname: {name!r}")
        return cleaned

    @model_validator(mode="after")
    def _hostnames_match_count(self) -> "CloneRequest":
        if len(self.hostnames) != self.count:
            raise ValueError(
                f"Expected {self.count} hostname(s) but received {len(self.hostnames)}"
            )
        return self

    @property
    def total_steps(self) -> int:
        # stop source, one step per replica, start source, start replicas, persist
        return self.count + 4


class CloneResult(BaseModel):
    """Outcome of a completed clone workflow."""

    cloned_ids: List[str] = Field(default_factory=list)
    record_ids: List[int] = Field(default_factory=list)


class BuildInfo(BaseModel):
    """Version metadata reported by the health endpoints."""

    version: str
    name: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: datetime
    active_sessions: int = 0
    build: Optional[BuildInfo] = None
