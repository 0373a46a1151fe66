"""Relay error taxonomy.

Every error carries the WebSocket close code used when it ends a session,
so a session can close its transport without a lookup table.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay errors."""

    close_code: int = 1011
    reason: str = "relay error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.reason)


class MissingIdentifier(RelayError):
    """The connect request lacks a non-empty ``id``."""

    close_code = 1008
    reason = "missing device id"


class UnknownGroup(RelayError):
    """A master tried to pair with an id that has no live slave."""

    close_code = 4404
    reason = "unknown device id"

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"No slave registered for '{device_id}'")


class TransportFailure(RelayError):
    """Read or write error on a connection's underlying stream."""

    close_code = 1011
    reason = "transport failure"


class TransportClosed(TransportFailure):
    """The peer closed the connection."""

    close_code = 1000
    reason = "closed"

    def __init__(self, code: int = 1000, message: str | None = None) -> None:
        self.code = code
        super().__init__(message or f"peer closed connection ({code})")


class SlaveSuperseded(RelayError):
    """A newer slave registered under the same id."""

    close_code = 4409
    reason = "superseded by a newer connection"


class GroupClosed(RelayError):
    """The slave left and its group was torn down."""

    close_code = 4410
    reason = "device disconnected"


class NoSlave(RelayError):
    """A master command found no slave to deliver to."""

    close_code = 4410
    reason = "device disconnected"


class SubscriberOverflow(RelayError):
    """A master fell too far behind the broadcast stream."""

    close_code = 4429
    reason = "subscriber lagged behind"
