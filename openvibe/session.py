"""Slave and master session lifecycles.

Each session opens (register or pair), completes the upgrade, then runs two
forwarding loops until one of them stops.  The loser is cancelled and
:meth:`Session.terminate` runs exactly once: registry cleanup, then a
transport close carrying the code of whatever ended the session.

  Slave:   transport → broadcast          command queue → transport
  Master:  transport → slave commands     subscription → transport
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from enum import Enum
from typing import Any, Coroutine

from openvibe.channels import Frame
from openvibe.config import OrphanPolicy, RelayConfig
from openvibe.errors import NoSlave, RelayError, TransportClosed
from openvibe.registry import MasterHandle, Registry, SlaveHandle
from openvibe.transport import Transport

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    REGISTERED = "registered"
    PAIRED = "paired"
    TERMINATED = "terminated"


def log_forward(device_id: str, direction: str, frame: Frame) -> None:
    """Log a forwarded frame, re-serializing JSON payloads compactly."""
    if isinstance(frame, bytes):
        logger.info("[%s] %s | <%d bytes>", device_id, direction, len(frame))
        return
    try:
        pretty = json.dumps(json.loads(frame), separators=(",", ":"), ensure_ascii=False)
    except ValueError:
        pretty = frame
    if "\n" in pretty:
        logger.info("[%s] %s |\n%s", device_id, direction, pretty)
    else:
        logger.info("[%s] %s | %s", device_id, direction, pretty)


def _close_args(error: BaseException | None) -> tuple[int, str]:
    if error is None or isinstance(error, TransportClosed):
        return 1000, ""
    if isinstance(error, RelayError):
        return error.close_code, error.reason
    return 1011, "internal error"


class Session(abc.ABC):
    """Shared lifecycle for one relay connection."""

    role = "session"
    active_state = SessionState.CONNECTING

    def __init__(
        self,
        transport: Transport,
        device_id: str,
        registry: Registry,
        config: RelayConfig | None = None,
    ) -> None:
        self.transport = transport
        self.device_id = device_id
        self.registry = registry
        self.config = config or registry.config
        self.state = SessionState.CONNECTING
        self.error: BaseException | None = None
        self._terminated = False

    @abc.abstractmethod
    async def _open(self) -> None:
        """Acquire routing handles from the registry."""

    @abc.abstractmethod
    async def _inbound(self) -> None:
        """Forward frames read from the transport."""

    @abc.abstractmethod
    async def _outbound(self) -> None:
        """Forward frames destined for the transport."""

    @abc.abstractmethod
    async def _cleanup(self) -> None:
        """Release routing handles."""

    async def run(self) -> None:
        """Drive the session to completion.  Never raises for relay errors."""
        try:
            await self._open()
        except RelayError as e:
            await self._reject(e)
            return

        try:
            await self.transport.accept()
            self.state = self.active_state
            logger.info("%s %s connected", self.role.capitalize(), self.device_id)
            self.error = await self._race(self._inbound(), self._outbound())
        except Exception as e:
            logger.exception("%s %s failed", self.role.capitalize(), self.device_id)
            self.error = e
        finally:
            await self.terminate(self.error)

    async def terminate(self, error: BaseException | None = None) -> None:
        """Release registry state and close the transport, once."""
        if self._terminated:
            return
        self._terminated = True
        self.state = SessionState.TERMINATED
        try:
            # Registry cleanup must finish even if this task is being cancelled.
            await asyncio.shield(self._cleanup())
        finally:
            code, reason = _close_args(error)
            await self.transport.close(code, reason)
        logger.info(
            "%s %s disconnected (%s)",
            self.role.capitalize(), self.device_id, error or "closed",
        )

    async def _reject(self, error: RelayError) -> None:
        self.error = error
        self._terminated = True
        self.state = SessionState.TERMINATED
        logger.info("%s %s rejected: %s", self.role.capitalize(), self.device_id, error)
        try:
            await self.transport.accept()
        except Exception as e:
            logger.debug("Accept before reject failed for %s: %s", self.device_id, e)
        await self.transport.close(error.close_code, error.reason)

    async def _race(self, *coros: Coroutine[Any, Any, None]) -> BaseException | None:
        """Run *coros* concurrently; the first to finish cancels the rest."""
        tasks = [asyncio.create_task(c) for c in coros]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in tasks:
            if task not in done or task.cancelled():
                continue
            exc = task.exception()
            if exc is None:
                continue
            if not isinstance(exc, RelayError):
                logger.error(
                    "Unexpected error in %s %s", self.role, self.device_id, exc_info=exc,
                )
            return exc
        return None


class SlaveSession(Session):
    """The device side of a group."""

    role = "slave"
    active_state = SessionState.REGISTERED

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.handle: SlaveHandle | None = None

    async def _open(self) -> None:
        self.handle = await self.registry.register_slave(self.device_id)

    async def _inbound(self) -> None:
        while True:
            frame = await self.transport.receive()
            if self.handle.publish(frame) and self.config.log_frames:
                log_forward(self.device_id, "Slave -> Master", frame)

    async def _outbound(self) -> None:
        while True:
            frame = await self.handle.recv_command()
            await self.transport.send(frame)

    async def _cleanup(self) -> None:
        if self.handle is not None:
            await self.registry.unregister_slave(self.device_id, self.handle)


class MasterSession(Session):
    """A controller paired to a device."""

    role = "master"
    active_state = SessionState.PAIRED

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.handle: MasterHandle | None = None
        self.dropped_commands = 0

    async def _open(self) -> None:
        self.handle = await self.registry.pair_master(self.device_id)

    async def _inbound(self) -> None:
        while True:
            frame = await self.transport.receive()
            if await self.handle.send_command(frame):
                if self.config.log_frames:
                    log_forward(self.device_id, "Master -> Slave", frame)
                continue
            if self.config.orphan_policy is OrphanPolicy.CLOSE:
                raise NoSlave(f"No slave registered for '{self.device_id}'")
            self.dropped_commands += 1
            logger.debug("No slave for %s, dropping command", self.device_id)

    async def _outbound(self) -> None:
        while True:
            frame = await self.handle.recv_broadcast()
            await self.transport.send(frame)

    async def _cleanup(self) -> None:
        if self.handle is not None:
            await self.registry.unregister_master(self.device_id, self.handle.subscription)
