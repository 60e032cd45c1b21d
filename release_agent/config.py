"""Configuration objects for the release agent.

Configuration is built once at process start and passed explicitly to the
components that need it.
"""

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AgentConfig:
    """Configuration for the ReleaseEngine."""

    timeout: float = 60.0
    """Seconds allowed for each release store or cluster call."""

    agent_chart_name: str = "release-agent"
    """Chart of the agent itself, exempt from label injection on upgrade."""

    legacy_agent_chart_name: str = "release-agent-legacy"
    """Chart name of previous agent deployments that may be migrated."""

    cert_manager_chart_name: str = "cert-manager"
    """Chart name recorded for compatibility during agent upgrades."""

    test_namespace: str = "release-agent-test"
    """Namespace that test releases are installed into."""


@dataclass(frozen=True)
class ChannelConfig:
    """Capacity of the packet queues."""

    command_queue_size: int = 100
    response_queue_size: int = 1000


@dataclass(frozen=True)
class ControllerConfig:
    """Configuration for the ReleaseController."""

    max_retries: int = 5
    """Number of times a failed reconciliation is requeued."""

    requeue_delay: float = 1.0
    """Initial delay before a requeue, doubled on every attempt."""


@dataclass(frozen=True)
class HelmConfig:
    """Binaries and directories used by the command line backed clients."""

    helm_bin: str = "helm"
    kubectl_bin: str = "kubectl"
    cache_dir: Path | None = None
