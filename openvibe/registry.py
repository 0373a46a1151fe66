"""Device-id registry and per-device routing groups.

A :class:`Group` exists exactly while a slave is registered for its id.
Masters never create groups; they subscribe to an existing group's
broadcast channel and resolve the current slave each time they send.

Structural changes (insert/remove a group, swap the slave, attach or detach
a subscription) are serialized by the registry lock.  Message delivery
never takes that lock.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from openvibe.channels import BroadcastChannel, CommandQueue, Frame, Subscription
from openvibe.config import RelayConfig
from openvibe.errors import GroupClosed, SlaveSuperseded, UnknownGroup

logger = logging.getLogger(__name__)


class Group:
    """Routing state for one device id."""

    def __init__(self, device_id: str, config: RelayConfig) -> None:
        self.device_id = device_id
        self.broadcast = BroadcastChannel(
            device_id,
            capacity=config.broadcast_capacity,
            policy=config.overflow_policy,
        )
        self.slave_outbox: CommandQueue | None = None
        self.closed = False

    @property
    def subscriber_count(self) -> int:
        return self.broadcast.subscriber_count

    async def close(self) -> None:
        self.closed = True
        self.broadcast.close(GroupClosed(f"Slave for '{self.device_id}' disconnected"))
        if self.slave_outbox is not None:
            await self.slave_outbox.close(GroupClosed(f"Group '{self.device_id}' removed"))
            self.slave_outbox = None


class SlaveHandle:
    """What a slave session needs: a publish side and a command inbox."""

    def __init__(self, group: Group, outbox: CommandQueue) -> None:
        self.group = group
        self.outbox = outbox

    @property
    def device_id(self) -> str:
        return self.group.device_id

    @property
    def is_current(self) -> bool:
        return not self.group.closed and self.group.slave_outbox is self.outbox

    def publish(self, frame: Frame) -> int:
        """Broadcast *frame* to every paired master."""
        if self.group.closed:
            raise GroupClosed(f"Group '{self.device_id}' removed")
        if self.group.slave_outbox is not self.outbox:
            raise SlaveSuperseded(f"Slave for '{self.device_id}' is no longer current")
        return self.group.broadcast.publish(frame)

    async def recv_command(self) -> Frame:
        return await self.outbox.recv()


class MasterHandle:
    """What a master session needs: a subscription and a path to the slave."""

    def __init__(self, group: Group, subscription: Subscription) -> None:
        self.group = group
        self.subscription = subscription

    @property
    def device_id(self) -> str:
        return self.group.device_id

    async def send_command(self, frame: Frame) -> bool:
        """Unicast *frame* to whichever slave is current.

        Returns False when no slave is registered.  A send blocked on a
        slave that gets superseded is retried against its replacement.
        """
        while True:
            outbox = None if self.group.closed else self.group.slave_outbox
            if outbox is None:
                return False
            if await outbox.send(frame):
                return True
            if self.group.slave_outbox is outbox:
                return False

    async def recv_broadcast(self) -> Frame:
        return await self.subscription.recv()


class Registry:
    """Process-wide map of device id → :class:`Group`."""

    def __init__(self, config: RelayConfig | None = None) -> None:
        self.config = config or RelayConfig()
        self._groups: dict[str, Group] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    def get(self, device_id: str) -> Group | None:
        return self._groups.get(device_id)

    # ── Slaves ─────────────────────────────────────────────────────

    async def register_slave(self, device_id: str) -> SlaveHandle:
        """Create or take over the group for *device_id*.

        A slave already registered under the id is superseded: its command
        queue is closed with :class:`SlaveSuperseded` and its session ends.
        Paired masters stay subscribed and follow the new slave.
        """
        async with self._lock:
            group = self._groups.get(device_id)
            if group is None:
                group = Group(device_id, self.config)
                self._groups[device_id] = group
            previous = group.slave_outbox
            outbox = CommandQueue(self.config.command_capacity)
            group.slave_outbox = outbox
            if previous is not None:
                logger.warning("Slave %s superseded by a new connection", device_id)
                await previous.close(SlaveSuperseded(
                    f"Another slave registered for '{device_id}'"
                ))
        return SlaveHandle(group, outbox)

    async def unregister_slave(self, device_id: str, handle: SlaveHandle | None = None) -> bool:
        """Remove the group for *device_id* and close its subscriptions.

        With *handle*, only removes the group if that handle is still the
        current slave, so a superseded session cannot tear down its
        replacement.  Returns True when a group was removed.
        """
        async with self._lock:
            group = self._groups.get(device_id)
            if group is None:
                return False
            if handle is not None and (handle.group is not group or not handle.is_current):
                return False
            del self._groups[device_id]
            await group.close()
        logger.debug("Group %s removed", device_id)
        return True

    # ── Masters ────────────────────────────────────────────────────

    async def pair_master(self, device_id: str) -> MasterHandle:
        """Subscribe to the group for *device_id*.

        Raises :class:`UnknownGroup` when no slave is registered; no group
        is created in that case.
        """
        async with self._lock:
            group = self._groups.get(device_id)
            if group is None:
                raise UnknownGroup(device_id)
            subscription = group.broadcast.subscribe()
        return MasterHandle(group, subscription)

    async def unregister_master(self, device_id: str, subscription: Subscription) -> None:
        """Detach *subscription*; the group itself is left alone."""
        async with self._lock:
            subscription.channel.unsubscribe(subscription)
        logger.debug("Master detached from %s", device_id)

    # ── Diagnostics / shutdown ─────────────────────────────────────

    def stats(self) -> dict[str, dict[str, Any]]:
        return {
            device_id: {
                "slave": group.slave_outbox is not None,
                "masters": group.subscriber_count,
            }
            for device_id, group in self._groups.items()
        }

    async def shutdown(self) -> None:
        """Close every group, ending all sessions."""
        async with self._lock:
            groups, self._groups = self._groups, {}
            for group in groups.values():
                await group.close()
        if groups:
            logger.info("Registry shut down, closed %d groups", len(groups))
