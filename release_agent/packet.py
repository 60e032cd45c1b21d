"""Command and response packets exchanged with the executor and upstream.

A `Packet` is an immutable envelope addressed by a key. Lifecycle commands are
addressed by release, while sync reports carry the commit of the desired state
that produced them so the upstream can correlate the report:

    env:<namespace>.release:<name>
    env:<namespace>.release:<name>.commit:<commit>

The packet type fully determines how the payload is decoded, see
`decode_payload`.
"""

from dataclasses import dataclass
from enum import StrEnum
import json
import logging
from typing import TypeVar

from mashumaro import DataClassDictMixin
from mashumaro.exceptions import MissingField, InvalidFieldValue

from .exceptions import PacketException
from .manifest import (
    DeleteReleaseRequest,
    InstallReleaseRequest,
    Release,
    ReleaseHooks,
    ReleaseSpec,
    RollbackReleaseRequest,
    StartReleaseRequest,
    StartReleaseResponse,
    StopReleaseRequest,
    StopReleaseResponse,
    TestReleaseRequest,
    TestReleaseResponse,
    UpgradeReleaseRequest,
)

__all__ = [
    "Packet",
    "PacketType",
    "release_key",
    "commit_key",
    "encode_payload",
    "decode_payload",
]

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T", bound=DataClassDictMixin)


class PacketType(StrEnum):
    """Operation carried by a packet."""

    # Commands
    RELEASE_PRE_INSTALL = "helm_release_pre_install"
    RELEASE_INSTALL = "helm_release_install"
    RELEASE_PRE_UPGRADE = "helm_release_pre_upgrade"
    RELEASE_UPGRADE = "helm_release_upgrade"
    RELEASE_ROLLBACK = "helm_release_rollback"
    RELEASE_DELETE = "helm_release_delete"
    RELEASE_START = "helm_release_start"
    RELEASE_STOP = "helm_release_stop"
    RELEASE_TEST = "helm_release_test"

    # Responses
    RELEASE_SYNCED = "helm_release_sync"
    RELEASE_SYNCED_FAILED = "helm_release_sync_failed"
    RELEASE_HOOKS = "helm_release_hooks"
    RELEASE_INSTALLED = "helm_release_installed"
    RELEASE_INSTALL_FAILED = "helm_release_install_failed"
    RELEASE_UPGRADED = "helm_release_upgraded"
    RELEASE_UPGRADE_FAILED = "helm_release_upgrade_failed"
    RELEASE_ROLLED_BACK = "helm_release_rolled_back"
    RELEASE_ROLLBACK_FAILED = "helm_release_rollback_failed"
    RELEASE_DELETED = "helm_release_deleted"
    RELEASE_DELETE_FAILED = "helm_release_delete_failed"
    RELEASE_STARTED = "helm_release_started"
    RELEASE_START_FAILED = "helm_release_start_failed"
    RELEASE_STOPPED = "helm_release_stopped"
    RELEASE_STOP_FAILED = "helm_release_stop_failed"
    RELEASE_TESTED = "helm_release_tested"
    RELEASE_TEST_FAILED = "helm_release_test_failed"


# Payload body of each structured packet type. Types not listed here carry a
# plain text message, or nothing at all for RELEASE_SYNCED.
PAYLOAD_TYPES: dict[PacketType, type[DataClassDictMixin]] = {
    PacketType.RELEASE_PRE_INSTALL: InstallReleaseRequest,
    PacketType.RELEASE_INSTALL: InstallReleaseRequest,
    PacketType.RELEASE_PRE_UPGRADE: UpgradeReleaseRequest,
    PacketType.RELEASE_UPGRADE: UpgradeReleaseRequest,
    PacketType.RELEASE_ROLLBACK: RollbackReleaseRequest,
    PacketType.RELEASE_DELETE: DeleteReleaseRequest,
    PacketType.RELEASE_START: StartReleaseRequest,
    PacketType.RELEASE_STOP: StopReleaseRequest,
    PacketType.RELEASE_TEST: TestReleaseRequest,
    PacketType.RELEASE_HOOKS: ReleaseHooks,
    PacketType.RELEASE_INSTALLED: Release,
    PacketType.RELEASE_UPGRADED: Release,
    PacketType.RELEASE_ROLLED_BACK: Release,
    PacketType.RELEASE_DELETED: Release,
    PacketType.RELEASE_STARTED: StartReleaseResponse,
    PacketType.RELEASE_STOPPED: StopReleaseResponse,
    PacketType.RELEASE_TESTED: TestReleaseResponse,
}

COMMAND_TYPES = frozenset(
    {
        PacketType.RELEASE_PRE_INSTALL,
        PacketType.RELEASE_INSTALL,
        PacketType.RELEASE_PRE_UPGRADE,
        PacketType.RELEASE_UPGRADE,
        PacketType.RELEASE_ROLLBACK,
        PacketType.RELEASE_DELETE,
        PacketType.RELEASE_START,
        PacketType.RELEASE_STOP,
        PacketType.RELEASE_TEST,
    }
)


@dataclass(frozen=True)
class Packet:
    """An immutable command or response envelope."""

    key: str
    """Address of the release the packet is about."""

    type: PacketType
    """The operation, which determines how the payload is decoded."""

    payload: str = ""
    """Serialized body of the operation."""

    @property
    def is_command(self) -> bool:
        return self.type in COMMAND_TYPES


def release_key(namespace: str, name: str) -> str:
    """Address of a release used for lifecycle operations."""
    return f"env:{namespace}.release:{name}"


def commit_key(namespace: str, name: str, commit: str | None) -> str:
    """Address of a release at a specific desired state commit."""
    return f"{release_key(namespace, name)}.commit:{commit or ''}"


def encode_payload(body: DataClassDictMixin) -> str | None:
    """Serialize a request or response body.

    Returns None when the body can't be serialized, so that a malformed
    command is never emitted.
    """
    try:
        return json.dumps(body.to_dict())
    except (TypeError, ValueError) as err:
        _LOGGER.error("Unable to encode %s payload: %s", type(body).__name__, err)
        return None


def decode_payload(packet: Packet, cls: type[_T]) -> _T:
    """Decode the payload of a packet as the body registered for its type."""
    if (expected := PAYLOAD_TYPES.get(packet.type)) is None:
        raise PacketException(f"Packet type {packet.type} has no structured payload")
    if not issubclass(expected, cls):
        raise PacketException(
            f"Packet type {packet.type} carries {expected.__name__}, not {cls.__name__}"
        )
    try:
        data = json.loads(packet.payload)
    except ValueError as err:
        raise PacketException(f"Invalid {packet.type} payload: {err}") from err
    if not isinstance(data, dict):
        raise PacketException(f"Invalid {packet.type} payload: {packet.payload}")
    try:
        return expected.from_dict(data)  # type: ignore[return-value]
    except (MissingField, InvalidFieldValue, ValueError, TypeError) as err:
        raise PacketException(f"Invalid {packet.type} payload: {err}") from err


def new_packet(key: str, packet_type: PacketType, body: DataClassDictMixin) -> Packet | None:
    """Create a packet with a structured body, or None if it can't be encoded."""
    if PAYLOAD_TYPES.get(packet_type) is not type(body):
        _LOGGER.error(
            "Refusing to build %s packet with %s payload",
            packet_type,
            type(body).__name__,
        )
        return None
    if (payload := encode_payload(body)) is None:
        return None
    return Packet(key=key, type=packet_type, payload=payload)


def install_command(spec: ReleaseSpec) -> Packet | None:
    """Command to install the desired release."""
    return new_packet(
        release_key(spec.namespace, spec.name),
        PacketType.RELEASE_PRE_INSTALL,
        InstallReleaseRequest.from_spec(spec),
    )


def upgrade_command(spec: ReleaseSpec) -> Packet | None:
    """Command to upgrade the release to the desired state."""
    request = InstallReleaseRequest.from_spec(spec)
    return new_packet(
        release_key(spec.namespace, spec.name),
        PacketType.RELEASE_PRE_UPGRADE,
        UpgradeReleaseRequest.from_dict(request.to_dict()),
    )


def delete_command(namespace: str, name: str) -> Packet | None:
    """Command to purge a release whose custom resource was deleted."""
    return new_packet(
        release_key(namespace, name),
        PacketType.RELEASE_DELETE,
        DeleteReleaseRequest(release_name=name, namespace=namespace),
    )


def synced_response(spec: ReleaseSpec) -> Packet:
    """Report that the release matches the desired state."""
    return Packet(
        key=commit_key(spec.namespace, spec.name, spec.commit),
        type=PacketType.RELEASE_SYNCED,
    )


def sync_failed_response(spec: ReleaseSpec, message: str) -> Packet:
    """Report that the desired state could not be synced."""
    return Packet(
        key=commit_key(spec.namespace, spec.name, spec.commit),
        type=PacketType.RELEASE_SYNCED_FAILED,
        payload=message,
    )


def failed_response(key: str, packet_type: PacketType, err: Exception) -> Packet:
    """Report a failed command with the error message as payload."""
    return Packet(key=key, type=packet_type, payload=str(err))
