"""Resources which are deleted again when the test leaves their scope."""

import logging
from typing import Any, Generic

from agent_integration.manifest import R

from .client import KubeClient
from .sync import TestKubeClient

__all__ = [
    "TemporaryResource",
    "AsyncTemporaryResource",
]

_LOGGER = logging.getLogger(__name__)


class TemporaryResource(Generic[R]):
    """A resource created on construction and deleted exactly once on close.

    Attributes of the resource can be read directly from this object:
    ```python
    with TemporaryResource(client, Pod, spec) as pod:
        assert pod.phase == "Pending"
    ```
    """

    __test__ = False

    def __init__(
        self, client: TestKubeClient, cls: type[R], spec: str | dict[str, Any]
    ) -> None:
        """Initialize TemporaryResource by creating the resource."""
        self._client = client
        self._resource: R | None = client.create(cls, spec)

    @property
    def resource(self) -> R:
        """Return the last known state of the resource."""
        if self._resource is None:
            raise ValueError("Temporary resource was already deleted")
        return self._resource

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self.resource, name)

    def update(self) -> R:
        """Refresh the held state of the resource from the API server."""
        self._resource = self._client.get_status(self.resource)
        return self._resource

    def close(self) -> None:
        """Delete the resource, if not already deleted."""
        resource, self._resource = self._resource, None
        if resource is None:
            return
        _LOGGER.debug("Deleting temporary %s", resource)
        self._client.delete(resource)

    def __enter__(self) -> "TemporaryResource[R]":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class AsyncTemporaryResource(Generic[R]):
    """A resource created on entering and deleted on leaving an async context."""

    def __init__(
        self, client: KubeClient, cls: type[R], spec: str | dict[str, Any]
    ) -> None:
        """Initialize AsyncTemporaryResource."""
        self._client = client
        self._cls = cls
        self._spec = spec
        self._resource: R | None = None

    @property
    def resource(self) -> R:
        """Return the last known state of the resource."""
        if self._resource is None:
            raise ValueError("Temporary resource does not exist")
        return self._resource

    async def update(self) -> R:
        """Refresh the held state of the resource from the API server."""
        self._resource = await self._client.get_status(self.resource)
        return self._resource

    async def __aenter__(self) -> R:
        self._resource = await self._client.create(self._cls, self._spec)
        return self._resource

    async def __aexit__(self, *args: Any) -> None:
        resource, self._resource = self._resource, None
        if resource is not None:
            _LOGGER.debug("Deleting temporary %s", resource)
            await self._client.delete(resource)
