"""Configuration objects for the agent integration tests."""

from collections.abc import Mapping
from dataclasses import dataclass, field
import os

__all__ = [
    "Timeouts",
    "ClientConfig",
]

DEFAULT_NAMESPACE = "default"
DEFAULT_FIELD_MANAGER = "agent_integration_test"


@dataclass
class Timeouts:
    """Bounds in seconds for each kind of wait performed by the client.

    The values may be changed on a client instance, e.g. a test which deletes
    a pod with a termination grace period extends `delete` accordingly.
    """

    create: float = 10.0
    """Wait for the watch feed to confirm a created resource."""

    delete: float = 10.0
    """Wait for the watch feed to confirm a deleted resource."""

    verify_status: float = 30.0
    """Wait for a predicate on the resource status to hold."""

    apply_crd: float = 30.0
    """Wait for a custom resource definition to be accepted."""

    def scaled(self, factor: float) -> "Timeouts":
        """Return a copy with every bound multiplied by the given factor."""
        return Timeouts(
            create=self.create * factor,
            delete=self.delete * factor,
            verify_status=self.verify_status * factor,
            apply_crd=self.apply_crd * factor,
        )


@dataclass
class ClientConfig:
    """Configuration for connecting to the cluster under test."""

    namespace: str = DEFAULT_NAMESPACE
    """The single namespace all namespaced resources live in."""

    field_manager: str = DEFAULT_FIELD_MANAGER
    """Field manager used for server-side apply."""

    context: str | None = None
    """The kubeconfig context to use, or the current context if unset."""

    config_file: str | None = None
    """Path to the kubeconfig file, or the default location if unset."""

    timeouts: Timeouts = field(default_factory=Timeouts)
    """Bounds for the waiting operations."""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ClientConfig":
        """Build a configuration from environment variables."""
        if environ is None:
            environ = os.environ
        timeouts = Timeouts()
        if scale := environ.get("AGENT_TEST_TIMEOUT_SCALE"):
            try:
                timeouts = timeouts.scaled(float(scale))
            except ValueError as err:
                raise ValueError(
                    f"Invalid AGENT_TEST_TIMEOUT_SCALE '{scale}': {err}"
                ) from err
        return cls(
            namespace=environ.get("AGENT_TEST_NAMESPACE") or DEFAULT_NAMESPACE,
            context=environ.get("AGENT_TEST_KUBE_CONTEXT") or None,
            config_file=environ.get("AGENT_TEST_KUBECONFIG") or None,
            timeouts=timeouts,
        )
