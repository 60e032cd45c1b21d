"""Tests for the packet channel."""

import asyncio

from release_agent.channel import PacketChannel
from release_agent.config import ChannelConfig
from release_agent.packet import Packet, PacketType


def _packet(index: int, packet_type: PacketType = PacketType.RELEASE_SYNCED) -> Packet:
    return Packet(key=f"env:proj.release:app{index}", type=packet_type)


async def test_commands_in_order() -> None:
    """Test that commands are received in emission order."""
    channel = PacketChannel()
    for i in range(3):
        await channel.send_command(_packet(i, PacketType.RELEASE_INSTALL))
    assert [(await channel.next_command()).key for _ in range(3)] == [
        "env:proj.release:app0",
        "env:proj.release:app1",
        "env:proj.release:app2",
    ]


async def test_command_queue_blocks_when_full() -> None:
    """Test that a full command queue applies backpressure instead of dropping."""
    channel = PacketChannel(ChannelConfig(command_queue_size=1))
    await channel.send_command(_packet(0, PacketType.RELEASE_INSTALL))

    pending = asyncio.create_task(
        channel.send_command(_packet(1, PacketType.RELEASE_INSTALL))
    )
    await asyncio.sleep(0.01)
    assert not pending.done()

    assert (await channel.next_command()).key == "env:proj.release:app0"
    await asyncio.wait_for(pending, timeout=1)
    assert [p.key for p in channel.pending_commands()] == ["env:proj.release:app1"]


async def test_response_queue_drops_oldest() -> None:
    """Test that a full response queue drops the oldest report."""
    channel = PacketChannel(ChannelConfig(response_queue_size=2))
    for i in range(4):
        await channel.send_response(_packet(i))
    assert channel.dropped_responses == 2
    assert [p.key for p in channel.pending_responses()] == [
        "env:proj.release:app2",
        "env:proj.release:app3",
    ]


async def test_pending_empty() -> None:
    """Test draining empty queues."""
    channel = PacketChannel()
    assert channel.pending_commands() == []
    assert channel.pending_responses() == []
    assert channel.dropped_responses == 0


async def test_next_response() -> None:
    """Test waiting for a response."""
    channel = PacketChannel()
    waiter = asyncio.create_task(channel.next_response())
    await asyncio.sleep(0)
    await channel.send_response(_packet(7))
    packet = await asyncio.wait_for(waiter, timeout=1)
    assert packet.key == "env:proj.release:app7"
