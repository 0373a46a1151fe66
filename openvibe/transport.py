"""Duplex frame transport seen by the relay sessions.

Sessions only talk to :class:`Transport`; :class:`WebSocketTransport`
adapts a FastAPI/Starlette WebSocket to it.  Frames are opaque: text frames
come through as ``str``, binary frames as ``bytes``, and are written back
with the same type.
"""

from __future__ import annotations

import abc
import logging

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from openvibe.channels import Frame
from openvibe.errors import TransportClosed, TransportFailure

logger = logging.getLogger(__name__)


class Transport(abc.ABC):
    """Abstract duplex connection carrying whole frames."""

    @abc.abstractmethod
    async def accept(self) -> None:
        """Complete the protocol upgrade."""
        raise NotImplementedError

    @abc.abstractmethod
    async def receive(self) -> Frame:
        """Return the next frame.

        Raises :class:`TransportClosed` when the peer closes and
        :class:`TransportFailure` on any other read error.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def send(self, frame: Frame) -> None:
        """Write *frame* unchanged.  Raises :class:`TransportFailure`."""
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the connection.  Idempotent, never raises."""
        raise NotImplementedError


class WebSocketTransport(Transport):
    """:class:`Transport` over a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    @property
    def peer(self) -> str:
        client = self.websocket.client
        return f"{client.host}:{client.port}" if client else "unknown"

    async def accept(self) -> None:
        await self.websocket.accept()

    async def receive(self) -> Frame:
        try:
            message = await self.websocket.receive()
        except WebSocketDisconnect as e:
            raise TransportClosed(e.code) from e
        except RuntimeError as e:
            raise TransportFailure(str(e)) from e

        if message["type"] == "websocket.disconnect":
            raise TransportClosed(message.get("code", 1000))
        text = message.get("text")
        if text is not None:
            return text
        data = message.get("bytes")
        if data is not None:
            return data
        raise TransportFailure(f"Unexpected message from {self.peer}: {message['type']}")

    async def send(self, frame: Frame) -> None:
        try:
            if isinstance(frame, bytes):
                await self.websocket.send_bytes(frame)
            else:
                await self.websocket.send_text(frame)
        except WebSocketDisconnect as e:
            raise TransportClosed(e.code) from e
        except (RuntimeError, OSError) as e:
            raise TransportFailure(str(e)) from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        ws = self.websocket
        if ws.client_state == WebSocketState.DISCONNECTED:
            return
        if ws.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await ws.close(code=code, reason=reason)
        except (RuntimeError, OSError) as e:
            logger.debug("Close on %s failed: %s", self.peer, e)
