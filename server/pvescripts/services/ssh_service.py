"""SSH service for executing commands on Proxmox VE hosts."""
from __future__ import annotations

import asyncio
import codecs
import io
import logging
import posixpath
import shlex
import socket
import threading
from pathlib import Path
from typing import List, Optional, Tuple

import paramiko

from ..core.config import settings
from ..core.models import ServerInfo
from .process_adapter import (
    DataCallback,
    ExitCallback,
    ProcessAdapter,
    ProcessStartError,
)

logger = logging.getLogger(__name__)

_READ_SIZE = 4096
_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


class SSHServiceError(ProcessStartError):
    """Base exception for SSH service failures."""


class SSHAuthenticationError(SSHServiceError):
    """Raised when authentication to a host fails."""


class SSHConnectionError(SSHServiceError):
    """Raised for transport level failures (DNS, refused, timeouts)."""


def _truncate_command(command: str, limit: int = 120) -> str:
    flattened = command.replace("\n", " ")
    if len(flattened) > limit:
        return f"{flattened[: limit - 3]}..."
    return flattened


class RemoteCommandProcess(ProcessAdapter):
    """A single command executed over SSH, optionally inside a remote pty."""

    def __init__(
        self,
        service: "SSHService",
        server: ServerInfo,
        command: str,
        *,
        use_pty: bool = True,
        upload: Optional[Tuple[Path, str]] = None,
        description: Optional[str] = None,
        on_data: Optional[DataCallback] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> None:
        super().__init__(
            description=description or f"ssh:{server.ip}:{_truncate_command(command, 60)}",
            on_data=on_data,
            on_exit=on_exit,
        )
        self.server = server
        self.command = command
        self.use_pty = use_pty
        self._service = service
        self._upload = upload
        self._client: Optional[paramiko.SSHClient] = None
        self._channel: Optional[paramiko.Channel] = None
        self._reader: Optional[threading.Thread] = None

    async def _spawn(self) -> None:
        opening = asyncio.ensure_future(asyncio.to_thread(self._open))
        try:
            self._client, self._channel = await asyncio.shield(opening)
        except asyncio.CancelledError:
            # The worker thread keeps connecting; close whatever it opens.
            opening.add_done_callback(self._discard_opened)
            raise
        self._reader = threading.Thread(
            target=self._reader_loop,
            name=f"ssh-reader-{self.server.ip}",
            daemon=True,
        )
        self._reader.start()

    def _open(self) -> Tuple[paramiko.SSHClient, paramiko.Channel]:
        client = self._service.connect(self.server)
        try:
            if self._upload is not None:
                local_path, remote_path = self._upload
                self._service.upload_file(client, local_path, remote_path)

            transport = client.get_transport()
            if transport is None or not transport.is_active():
                raise SSHConnectionError(f"SSH transport to {self.server.ip} is not active")

            channel = transport.open_session()
            if self.use_pty:
                channel.get_pty(
                    term=settings.terminal_name,
                    width=settings.terminal_cols,
                    height=settings.terminal_rows,
                )
            channel.set_combine_stderr(True)
            channel.exec_command(self.command)
        except SSHServiceError:
            client.close()
            raise
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            logger.error("Failed to start command on %s: %s", self.server.ip, exc)
            raise SSHConnectionError(str(exc)) from exc

        logger.info(
            "Started remote command on %s: %s",
            self.server.display_name,
            _truncate_command(self.command),
        )
        return client, channel

    def _discard_opened(self, opening: asyncio.Future) -> None:
        if opening.cancelled() or opening.exception() is not None:
            return
        client, channel = opening.result()
        logger.info(
            "Closing SSH session to %s opened after %s was cancelled",
            self.server.ip,
            self.description,
        )
        channel.close()
        client.close()

    def _reader_loop(self) -> None:
        channel = self._channel
        client = self._client
        assert channel is not None and client is not None

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        while True:
            try:
                chunk = channel.recv(_READ_SIZE)
            except (socket.error, EOFError, paramiko.SSHException) as exc:
                logger.debug("SSH read for %s ended: %s", self.description, exc)
                break
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self._call_threadsafe(self._emit_data, text)

        tail = decoder.decode(b"", final=True)
        if tail:
            self._call_threadsafe(self._emit_data, tail)

        code: Optional[int]
        if self._killed_with is not None:
            code = None
        else:
            try:
                code = channel.recv_exit_status()
            except (socket.error, paramiko.SSHException):
                code = -1

        try:
            client.close()
        except Exception:  # pragma: no cover - best effort cleanup
            logger.debug("Failed to close SSH client for %s", self.description, exc_info=True)

        self._call_threadsafe(self._emit_exit, code, self._killed_with)

    def _write(self, text: str) -> None:
        assert self._channel is not None
        self._channel.sendall(text.encode("utf-8"))

    def _kill(self, sig: int) -> None:
        # SSH offers no reliable signal delivery; closing the channel ends the
        # local session and usually hangs up the remote pty.
        if self._channel is not None:
            self._channel.close()
        if self._client is not None:
            self._client.close()


class SSHService:
    """Service for managing SSH connections to Proxmox VE hosts."""

    def connect(self, server: ServerInfo) -> paramiko.SSHClient:
        """Open an authenticated SSH client for ``server``."""

        client = paramiko.SSHClient()
        if settings.ssh_strict_host_keys:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        pkey = self._load_private_key(server) if server.ssh_key else None
        logger.info(
            "Creating SSH session to %s (port=%s, user=%s, auth=%s)",
            server.ip,
            server.ssh_port,
            server.user,
            "key" if pkey is not None else "password",
        )

        try:
            client.connect(
                hostname=server.ip,
                port=server.ssh_port,
                username=server.user,
                password=server.password if pkey is None else None,
                pkey=pkey,
                timeout=settings.ssh_connect_timeout,
                banner_timeout=settings.ssh_connect_timeout,
                auth_timeout=settings.ssh_connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            logger.error("Authentication failed while connecting to %s: %s", server.ip, exc)
            raise SSHAuthenticationError(f"Authentication failed for {server.user}@{server.ip}") from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            logger.error("Failed to connect to %s: %s", server.ip, exc)
            raise SSHConnectionError(f"Unable to connect to {server.ip}: {exc}") from exc

        transport = client.get_transport()
        if transport is not None and settings.ssh_keepalive_interval > 0:
            transport.set_keepalive(settings.ssh_keepalive_interval)

        logger.debug("Created SSH session to %s", server.ip)
        return client

    @staticmethod
    def _load_private_key(server: ServerInfo) -> paramiko.PKey:
        """Parse private key material supplied with the server record."""

        errors: List[str] = []
        for key_class in _KEY_CLASSES:
            try:
                return key_class.from_private_key(
                    io.StringIO(server.ssh_key or ""),
                    password=server.ssh_key_passphrase or None,
                )
            except (paramiko.SSHException, ValueError) as exc:
                errors.append(f"{key_class.__name__}: {exc}")

        logger.debug("Unable to parse SSH key for %s: %s", server.ip, "; ".join(errors))
        raise SSHAuthenticationError(f"Unsupported or invalid SSH key for {server.ip}")

    @staticmethod
    def upload_file(client: paramiko.SSHClient, local_path: Path, remote_path: str) -> None:
        """Copy a local file to the remote host and mark it executable."""

        remote_dir = posixpath.dirname(remote_path)
        try:
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError) as exc:
            raise SSHConnectionError(f"Unable to open SFTP session: {exc}") from exc

        try:
            if remote_dir:
                try:
                    sftp.stat(remote_dir)
                except IOError:
                    sftp.mkdir(remote_dir)
            sftp.put(str(local_path), remote_path)
            sftp.chmod(remote_path, 0o755)
        except (paramiko.SSHException, OSError) as exc:
            raise SSHConnectionError(f"Failed to upload {local_path.name}: {exc}") from exc
        finally:
            sftp.close()

        logger.info("Uploaded %s to %s", local_path, remote_path)

    async def execute_command(
        self,
        server: ServerInfo,
        command: str,
        on_data: Optional[DataCallback] = None,
        on_exit: Optional[ExitCallback] = None,
        *,
        use_pty: bool = True,
        description: Optional[str] = None,
    ) -> RemoteCommandProcess:
        """Start ``command`` on ``server`` and stream its combined output."""

        logger.info("Executing command on %s: %s", server.display_name, _truncate_command(command))
        process = RemoteCommandProcess(
            self,
            server,
            command,
            use_pty=use_pty,
            description=description,
            on_data=on_data,
            on_exit=on_exit,
        )
        await process.start()
        return process

    async def execute_script(
        self,
        server: ServerInfo,
        script_path: Path,
        on_data: Optional[DataCallback] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> RemoteCommandProcess:
        """Upload a validated local script and run it with bash on ``server``."""

        remote_path = posixpath.join(settings.remote_script_dir, script_path.name)
        command = f"bash {shlex.quote(remote_path)}"
        logger.info("Executing script %s on %s", script_path.name, server.display_name)
        process = RemoteCommandProcess(
            self,
            server,
            command,
            upload=(script_path, remote_path),
            description=f"ssh:{server.ip}:{script_path.name}",
            on_data=on_data,
            on_exit=on_exit,
        )
        await process.start()
        return process

# Global SSH service instance
ssh_service = SSHService()

__all__ = [
    "RemoteCommandProcess",
    "SSHAuthenticationError",
    "SSHConnectionError",
    "SSHService",
    "SSHServiceError",
    "ssh_service",
]
