"""Bounded queues carrying packets out of the reconciler.

The command queue blocks producers when full: a dropped install or upgrade is
a lost desired state transition. The response queue carries status reports
that are safe to lose, so when full the oldest report is dropped to make room.
"""

import asyncio
import logging

from .config import ChannelConfig
from .packet import Packet

__all__ = [
    "PacketChannel",
]

_LOGGER = logging.getLogger(__name__)


class PacketChannel:
    """A command queue and a response queue shared by producers and consumers."""

    def __init__(self, config: ChannelConfig | None = None) -> None:
        """Initialize PacketChannel."""
        config = config or ChannelConfig()
        self._commands: asyncio.Queue[Packet] = asyncio.Queue(
            maxsize=config.command_queue_size
        )
        self._responses: asyncio.Queue[Packet] = asyncio.Queue(
            maxsize=config.response_queue_size
        )
        self._dropped_responses = 0

    async def send_command(self, packet: Packet) -> None:
        """Enqueue a command, waiting while the queue is full."""
        if self._commands.full():
            _LOGGER.info(
                "Command queue full, waiting to enqueue %s %s", packet.type, packet.key
            )
        await self._commands.put(packet)
        _LOGGER.debug("Sent command %s %s", packet.type, packet.key)

    async def send_response(self, packet: Packet) -> None:
        """Enqueue a response, dropping the oldest response when full."""
        while self._responses.full():
            dropped = self._responses.get_nowait()
            self._responses.task_done()
            self._dropped_responses += 1
            _LOGGER.warning(
                "Response queue full, dropped %s %s", dropped.type, dropped.key
            )
        self._responses.put_nowait(packet)
        _LOGGER.debug("Sent response %s %s", packet.type, packet.key)

    async def next_command(self) -> Packet:
        """Wait for the next command in emission order."""
        packet = await self._commands.get()
        self._commands.task_done()
        return packet

    async def next_response(self) -> Packet:
        """Wait for the next response."""
        packet = await self._responses.get()
        self._responses.task_done()
        return packet

    def pending_commands(self) -> list[Packet]:
        """Remove and return every queued command without waiting."""
        return _drain(self._commands)

    def pending_responses(self) -> list[Packet]:
        """Remove and return every queued response without waiting."""
        return _drain(self._responses)

    @property
    def dropped_responses(self) -> int:
        """Number of responses dropped because the queue was full."""
        return self._dropped_responses


def _drain(queue: asyncio.Queue[Packet]) -> list[Packet]:
    packets = []
    while not queue.empty():
        packets.append(queue.get_nowait())
        queue.task_done()
    return packets
