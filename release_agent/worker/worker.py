"""Executes command packets against the release engine.

The worker is the single consumer of the command queue. Each command is
decoded, executed and answered with a response packet on the same key.
Pre-install and pre-upgrade first report the rendered hooks and then run the
install or upgrade right away, rather than enqueueing a follow-up command into
the queue the worker itself drains.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
from typing import Any

from mashumaro import DataClassDictMixin

from release_agent.channel import PacketChannel
from release_agent.exceptions import AgentException, ReleaseUpgradeError
from release_agent.manifest import (
    InstallReleaseRequest,
    ReleaseHook,
    ReleaseHooks,
    UpgradeReleaseRequest,
)
from release_agent.packet import (
    PAYLOAD_TYPES,
    Packet,
    PacketType,
    decode_payload,
    failed_response,
    new_packet,
)
from release_agent.releases import ReleaseEngine

__all__ = [
    "CommandWorker",
]

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Route:
    """Response types of a command."""

    success: PacketType
    failure: PacketType


ROUTES: dict[PacketType, _Route] = {
    PacketType.RELEASE_PRE_INSTALL: _Route(
        PacketType.RELEASE_INSTALLED, PacketType.RELEASE_INSTALL_FAILED
    ),
    PacketType.RELEASE_INSTALL: _Route(
        PacketType.RELEASE_INSTALLED, PacketType.RELEASE_INSTALL_FAILED
    ),
    PacketType.RELEASE_PRE_UPGRADE: _Route(
        PacketType.RELEASE_UPGRADED, PacketType.RELEASE_UPGRADE_FAILED
    ),
    PacketType.RELEASE_UPGRADE: _Route(
        PacketType.RELEASE_UPGRADED, PacketType.RELEASE_UPGRADE_FAILED
    ),
    PacketType.RELEASE_ROLLBACK: _Route(
        PacketType.RELEASE_ROLLED_BACK, PacketType.RELEASE_ROLLBACK_FAILED
    ),
    PacketType.RELEASE_DELETE: _Route(
        PacketType.RELEASE_DELETED, PacketType.RELEASE_DELETE_FAILED
    ),
    PacketType.RELEASE_START: _Route(
        PacketType.RELEASE_STARTED, PacketType.RELEASE_START_FAILED
    ),
    PacketType.RELEASE_STOP: _Route(
        PacketType.RELEASE_STOPPED, PacketType.RELEASE_STOP_FAILED
    ),
    PacketType.RELEASE_TEST: _Route(
        PacketType.RELEASE_TESTED, PacketType.RELEASE_TEST_FAILED
    ),
}

Handler = Callable[[str, Any], Awaitable[DataClassDictMixin]]


def _keyless(call: Callable[[Any], Awaitable[DataClassDictMixin]]) -> Handler:
    """Adapt an engine operation that does not need the packet key."""

    async def handler(key: str, request: Any) -> DataClassDictMixin:
        return await call(request)

    return handler


class CommandWorker:
    """Drains the command queue and answers each command with a response."""

    def __init__(self, engine: ReleaseEngine, channel: PacketChannel) -> None:
        """Initialize CommandWorker."""
        self._engine = engine
        self._channel = channel
        self._handlers: dict[PacketType, Handler] = {
            PacketType.RELEASE_PRE_INSTALL: self._pre_install,
            PacketType.RELEASE_INSTALL: _keyless(engine.install_release),
            PacketType.RELEASE_PRE_UPGRADE: self._pre_upgrade,
            PacketType.RELEASE_UPGRADE: _keyless(engine.upgrade_release),
            PacketType.RELEASE_ROLLBACK: _keyless(engine.rollback_release),
            PacketType.RELEASE_DELETE: _keyless(engine.delete_release),
            PacketType.RELEASE_START: _keyless(engine.start_release),
            PacketType.RELEASE_STOP: _keyless(engine.stop_release),
            PacketType.RELEASE_TEST: _keyless(engine.execute_test),
        }

    async def run(self) -> None:
        """Handle commands until cancelled."""
        _LOGGER.info("Command worker started")
        while True:
            packet = await self._channel.next_command()
            await self.handle(packet)

    async def handle(self, packet: Packet) -> None:
        """Execute one command and send its responses."""
        if (route := ROUTES.get(packet.type)) is None:
            _LOGGER.error("Ignoring %s packet %s, not a command", packet.type, packet.key)
            return
        _LOGGER.debug("Handling %s %s", packet.type, packet.key)
        try:
            request = decode_payload(packet, PAYLOAD_TYPES[packet.type])
            body = await self._handlers[packet.type](packet.key, request)
        except ReleaseUpgradeError as err:
            _LOGGER.error("Command %s %s failed: %s", packet.type, packet.key, err)
            if err.release is not None:
                await self._respond(packet.key, route.success, err.release)
            await self._channel.send_response(
                failed_response(packet.key, route.failure, err)
            )
            return
        except AgentException as err:
            _LOGGER.error("Command %s %s failed: %s", packet.type, packet.key, err)
            await self._channel.send_response(
                failed_response(packet.key, route.failure, err)
            )
            return
        except Exception as err:  # pylint: disable=broad-except
            _LOGGER.exception("Command %s %s failed unexpectedly", packet.type, packet.key)
            await self._channel.send_response(
                failed_response(packet.key, route.failure, err)
            )
            return
        await self._respond(packet.key, route.success, body)

    async def _respond(
        self, key: str, packet_type: PacketType, body: DataClassDictMixin
    ) -> None:
        if (response := new_packet(key, packet_type, body)) is None:
            _LOGGER.error("Response %s %s could not be encoded, not sent", packet_type, key)
            return
        await self._channel.send_response(response)

    async def _send_hooks(
        self, key: str, release_name: str, hooks: list[ReleaseHook]
    ) -> None:
        await self._respond(
            key,
            PacketType.RELEASE_HOOKS,
            ReleaseHooks(release_name=release_name, hooks=hooks),
        )

    async def _pre_install(
        self, key: str, request: InstallReleaseRequest
    ) -> DataClassDictMixin:
        hooks = await self._engine.pre_install_release(request)
        await self._send_hooks(key, request.release_name, hooks)
        return await self._engine.install_release(request)

    async def _pre_upgrade(
        self, key: str, request: UpgradeReleaseRequest
    ) -> DataClassDictMixin:
        hooks = await self._engine.pre_upgrade_release(request)
        await self._send_hooks(key, request.release_name, hooks)
        return await self._engine.upgrade_release(request)

