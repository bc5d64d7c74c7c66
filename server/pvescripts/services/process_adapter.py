"""Process adapters that stream terminal output back onto the event loop.

Two transports sit behind one contract: a local pseudo-terminal spawned with
``ptyprocess`` and a remote command executed over SSH (see ``ssh_service``).
Both read their output on a daemon thread and hand every chunk to the event
loop, where a single pump task delivers ``on_data`` callbacks in arrival order
followed by exactly one ``on_exit`` callback.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from ptyprocess import PtyProcess, PtyProcessError

from ..core.config import settings

logger = logging.getLogger(__name__)

DataCallback = Callable[[str], Awaitable[None]]
ExitCallback = Callable[[Optional[int], Optional[str]], Awaitable[None]]

_READ_SIZE = 4096


class ProcessStartError(RuntimeError):
    """Raised when a process cannot be spawned or connected."""


class ScriptPathError(ValueError):
    """Raised when a script path escapes the allowed scripts directory."""


@dataclass(frozen=True)
class ProcessExit:
    """Terminal status reported by a process adapter."""

    code: Optional[int]
    signal: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.code == 0


def signal_name(sig: Union[int, signal.Signals, None]) -> Optional[str]:
    """Return the symbolic name for a signal number."""

    if sig is None:
        return None
    try:
        return signal.Signals(sig).name
    except ValueError:
        return str(sig)


def resolve_script_path(script_path: str, scripts_dir: Optional[Path] = None) -> Path:
    """Resolve ``script_path`` and ensure it lives under the scripts directory."""

    base = (scripts_dir or settings.get_scripts_dir()).resolve()
    if not script_path or not str(script_path).strip():
        raise ScriptPathError("Script path is empty")

    candidate = Path(script_path).expanduser()
    if not candidate.is_absolute():
        candidate = Path.cwd() / candidate
    resolved = candidate.resolve()

    if resolved == base or base not in resolved.parents:
        raise ScriptPathError("Script path is not within the allowed scripts directory")
    return resolved


class ProcessAdapter(ABC):
    """Common streaming contract shared by local and remote processes."""

    def __init__(
        self,
        *,
        description: str,
        on_data: Optional[DataCallback] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> None:
        self.description = description
        self._on_data = on_data
        self._on_exit = on_exit
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: Optional[asyncio.Queue[Tuple[str, object]]] = None
        self._exit_future: Optional[asyncio.Future[ProcessExit]] = None
        self._pump_task: Optional[asyncio.Task[None]] = None
        self._started = False
        self._exit_queued = False
        self._killed_with: Optional[str] = None

    async def start(self) -> "ProcessAdapter":
        """Spawn or connect the process.

        Raises ``ProcessStartError`` when the process cannot be started; in
        that case ``on_exit`` is never invoked.
        """

        if self._started:
            raise RuntimeError(f"{self.description} already started")

        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self._exit_future = self._loop.create_future()

        await self._spawn()

        self._started = True
        self._pump_task = self._loop.create_task(
            self._pump(), name=f"process-pump:{self.description}"
        )
        return self

    @property
    def running(self) -> bool:
        """True between a successful start and the exit event."""

        return self._started and not self._exit_queued

    def write(self, text: str) -> None:
        """Forward input to the process; ignored once it has exited."""

        if not self.running or not text:
            return
        try:
            self._write(text)
        except (OSError, EOFError) as exc:
            logger.debug("Dropping input for %s: %s", self.description, exc)

    def kill(self, sig: int = signal.SIGTERM) -> None:
        """Request termination. Best effort; exit is still reported via ``on_exit``."""

        if not self.running:
            return
        self._killed_with = signal_name(sig)
        logger.info("Sending %s to %s", self._killed_with, self.description)
        try:
            self._kill(sig)
        except (OSError, EOFError) as exc:
            logger.debug("Kill request for %s failed: %s", self.description, exc)

    async def wait(self) -> ProcessExit:
        """Wait for the exit event to be delivered."""

        if self._exit_future is None:
            raise RuntimeError(f"{self.description} was never started")
        return await asyncio.shield(self._exit_future)

    # ------------------------------------------------------------------
    # Event marshalling
    # ------------------------------------------------------------------

    def _emit_data(self, text: str) -> None:
        if text and not self._exit_queued and self._events is not None:
            self._events.put_nowait(("data", text))

    def _emit_exit(self, code: Optional[int], sig: Optional[str]) -> None:
        if self._exit_queued or self._events is None:
            return
        self._exit_queued = True
        self._events.put_nowait(("exit", ProcessExit(code=code, signal=sig)))

    def _call_threadsafe(self, callback: Callable[..., None], *args: object) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:  # pragma: no cover - loop shutting down
            logger.debug("Event loop closed before %s delivered an event", self.description)

    async def _pump(self) -> None:
        assert self._events is not None
        assert self._exit_future is not None

        while True:
            kind, payload = await self._events.get()
            if kind == "data":
                if self._on_data is not None:
                    try:
                        await self._on_data(payload)  # type: ignore[arg-type]
                    except Exception:
                        logger.exception("Output handler for %s failed", self.description)
                continue

            result: ProcessExit = payload  # type: ignore[assignment]
            logger.info(
                "%s exited (code=%s, signal=%s)",
                self.description,
                result.code,
                result.signal,
            )
            try:
                if self._on_exit is not None:
                    await self._on_exit(result.code, result.signal)
            except Exception:
                logger.exception("Exit handler for %s failed", self.description)
            finally:
                if not self._exit_future.done():
                    self._exit_future.set_result(result)
            return

    # ------------------------------------------------------------------
    # Transport hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _spawn(self) -> None:
        """Start the transport and its reader thread."""

    @abstractmethod
    def _write(self, text: str) -> None:
        """Send text to the process input."""

    @abstractmethod
    def _kill(self, sig: int) -> None:
        """Deliver a termination request."""


class LocalPtyProcess(ProcessAdapter):
    """Run a command on this host inside a pseudo-terminal."""

    def __init__(
        self,
        argv: Sequence[str],
        *,
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Mapping[str, str]] = None,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
        description: Optional[str] = None,
        on_data: Optional[DataCallback] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> None:
        super().__init__(
            description=description or f"local:{' '.join(argv)}",
            on_data=on_data,
            on_exit=on_exit,
        )
        self.argv = list(argv)
        self.cwd = str(cwd) if cwd is not None else None
        self.cols = cols or settings.terminal_cols
        self.rows = rows or settings.terminal_rows
        self.env = self._build_environment(env)
        self._pty: Optional[PtyProcess] = None
        self._reader: Optional[threading.Thread] = None

    def _build_environment(self, overrides: Optional[Mapping[str, str]]) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "TERM": settings.terminal_name,
                "FORCE_ANSI": "true",
                "COLUMNS": str(self.cols),
                "LINES": str(self.rows),
            }
        )
        if overrides:
            env.update(overrides)
        return env

    async def _spawn(self) -> None:
        try:
            self._pty = PtyProcess.spawn(
                self.argv,
                cwd=self.cwd,
                env=self.env,
                dimensions=(self.rows, self.cols),
            )
        except (OSError, ValueError, PtyProcessError) as exc:
            raise ProcessStartError(f"Failed to spawn {self.argv[0]}: {exc}") from exc

        logger.info("Spawned %s (pid=%s)", self.description, self._pty.pid)
        self._reader = threading.Thread(
            target=self._reader_loop,
            name=f"pty-reader-{self._pty.pid}",
            daemon=True,
        )
        self._reader.start()

    def _reader_loop(self) -> None:
        pty = self._pty
        assert pty is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        while True:
            try:
                chunk = pty.read(_READ_SIZE)
            except EOFError:
                break
            except OSError as exc:
                logger.debug("PTY read for %s ended: %s", self.description, exc)
                break
            text = decoder.decode(chunk)
            if text:
                self._call_threadsafe(self._emit_data, text)

        tail = decoder.decode(b"", final=True)
        if tail:
            self._call_threadsafe(self._emit_data, tail)

        try:
            pty.wait()
        except Exception as exc:
            logger.debug("PTY wait for %s failed: %s", self.description, exc)

        code = pty.exitstatus
        sig = signal_name(pty.signalstatus) if pty.signalstatus is not None else None
        try:
            pty.close(force=True)
        except Exception:  # pragma: no cover - best effort cleanup
            logger.debug("Failed to close PTY for %s", self.description, exc_info=True)

        self._call_threadsafe(self._emit_exit, code, sig)

    def _write(self, text: str) -> None:
        assert self._pty is not None
        self._pty.write(text.encode("utf-8"))

    def _kill(self, sig: int) -> None:
        assert self._pty is not None
        self._pty.kill(sig)


async def spawn_local(
    argv: Sequence[str],
    *,
    cwd: Optional[Union[str, Path]] = None,
    description: Optional[str] = None,
    on_data: Optional[DataCallback] = None,
    on_exit: Optional[ExitCallback] = None,
) -> LocalPtyProcess:
    """Create and start a ``LocalPtyProcess``."""

    process = LocalPtyProcess(
        argv,
        cwd=cwd,
        description=description,
        on_data=on_data,
        on_exit=on_exit,
    )
    await process.start()
    return process


__all__ = [
    "DataCallback",
    "ExitCallback",
    "LocalPtyProcess",
    "ProcessAdapter",
    "ProcessExit",
    "ProcessStartError",
    "ScriptPathError",
    "resolve_script_path",
    "signal_name",
    "spawn_local",
]
