"""Access to one kind of resource through the Kubernetes API.

A `ResourceApi` exposes the handful of calls the client needs for a kind:
list, read, create, server-side apply, delete and a watch feed filtered to a
single object. Objects are passed around as the raw JSON documents of the
API server so that all kinds can be handled uniformly.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
import logging
from typing import Any

import aiohttp
from kubernetes_asyncio import client, watch
from kubernetes_asyncio.client.exceptions import ApiException

from agent_integration.exceptions import ApiError
from agent_integration.manifest import (
    CRD_KIND,
    NODE_KIND,
    POD_KIND,
    REPOSITORY_GROUP,
    REPOSITORY_KIND,
    REPOSITORY_PLURAL,
    REPOSITORY_VERSION,
)

__all__ = [
    "WatchEventType",
    "WatchEvent",
    "ResourceApi",
    "LogSource",
    "build_resource_apis",
]

_LOGGER = logging.getLogger(__name__)

APPLY_PATCH_CONTENT_TYPE = "application/apply-patch+yaml"


class WatchEventType(StrEnum):
    """Type of an event in a watch feed."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


@dataclass
class WatchEvent:
    """A single change of an object delivered by a watch feed."""

    type: WatchEventType
    """The kind of change."""

    object: dict[str, Any]
    """The object after the change, or a Status object for errors."""

    @property
    def name(self) -> str | None:
        """Return the name of the changed object."""
        return (self.object.get("metadata") or {}).get("name")


class ResourceApi(ABC):
    """Calls for one kind of resource."""

    kind: str
    """The kind of resources handled."""

    @abstractmethod
    async def list(self, label_selector: str | None = None) -> list[dict[str, Any]]:
        """List the objects matching the label selector."""

    @abstractmethod
    async def read(self, name: str) -> dict[str, Any]:
        """Read the object with the given name."""

    @abstractmethod
    async def create(self, body: dict[str, Any]) -> dict[str, Any]:
        """Create a new object."""

    @abstractmethod
    async def apply(
        self, name: str, body: dict[str, Any], field_manager: str
    ) -> dict[str, Any]:
        """Apply the object with server-side apply, forcing field ownership."""

    @abstractmethod
    async def delete(self, name: str) -> dict[str, Any]:
        """Delete the object with the given name.

        Returns a Status object if the object is gone already or the object
        itself if its deletion is still pending.
        """

    @abstractmethod
    def watch(
        self, name: str, resource_version: str, timeout_seconds: int
    ) -> AsyncIterator[WatchEvent]:
        """Watch the changes of the object with the given name.

        The feed starts after the given resource version, where "0" starts
        with the current state of the object delivered as an ADDED event. It
        ends when the server side timeout expires.
        """


class LogSource(ABC):
    """Access to the logs of a pod."""

    @abstractmethod
    async def read_logs(
        self, name: str, tail_lines: int | None = None, container: str | None = None
    ) -> bytes:
        """Read the raw log output of the pod with the given name."""


@contextmanager
def _api_errors(operation: str) -> Generator[None, None, None]:
    """Translate errors of the Kubernetes library into ApiError."""
    try:
        yield
    except ApiException as err:
        _LOGGER.debug("%s failed: %s %s", operation, err.status, err.reason)
        raise ApiError(f"{operation} failed: {err.reason}", status=err.status) from err
    except aiohttp.ClientError as err:
        _LOGGER.debug("%s failed: %s", operation, err)
        raise ApiError(f"{operation} failed: {err}") from err


class KubernetesResourceApi(ResourceApi, ABC):
    """Resource calls backed by the kubernetes_asyncio client."""

    def __init__(self, api_client: client.ApiClient, namespace: str) -> None:
        """Initialize KubernetesResourceApi."""
        self._api_client = api_client
        self._namespace = namespace

    def _to_doc(self, obj: Any) -> dict[str, Any]:
        """Convert a model object of the library into its JSON document."""
        return self._api_client.sanitize_for_serialization(obj)

    @abstractmethod
    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list function and its fixed arguments."""

    async def list(self, label_selector: str | None = None) -> list[dict[str, Any]]:
        func, kwargs = self._list_call()
        if label_selector:
            kwargs["label_selector"] = label_selector
        with _api_errors(f"Listing {self.kind}"):
            result = await func(**kwargs)
        return list(self._to_doc(result).get("items") or [])

    async def watch(
        self, name: str, resource_version: str, timeout_seconds: int
    ) -> AsyncIterator[WatchEvent]:
        func, kwargs = self._list_call()
        with _api_errors(f"Watching {self.kind} {name}"):
            async with watch.Watch().stream(
                func,
                **kwargs,
                field_selector=f"metadata.name={name}",
                resource_version=resource_version,
                timeout_seconds=timeout_seconds,
            ) as stream:
                async for event in stream:
                    yield WatchEvent(
                        type=WatchEventType(event["type"]),
                        object=event["raw_object"],
                    )


class PodApi(KubernetesResourceApi, LogSource):
    """Calls for Pods in the namespace under test."""

    kind = POD_KIND

    def __init__(self, api_client: client.ApiClient, namespace: str) -> None:
        """Initialize PodApi."""
        super().__init__(api_client, namespace)
        self._core = client.CoreV1Api(api_client)

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        return self._core.list_namespaced_pod, {"namespace": self._namespace}

    async def read(self, name: str) -> dict[str, Any]:
        with _api_errors(f"Reading Pod {name}"):
            return self._to_doc(
                await self._core.read_namespaced_pod(name, self._namespace)
            )

    async def create(self, body: dict[str, Any]) -> dict[str, Any]:
        with _api_errors("Creating Pod"):
            return self._to_doc(
                await self._core.create_namespaced_pod(self._namespace, body)
            )

    async def apply(
        self, name: str, body: dict[str, Any], field_manager: str
    ) -> dict[str, Any]:
        with _api_errors(f"Applying Pod {name}"):
            return self._to_doc(
                await self._core.patch_namespaced_pod(
                    name,
                    self._namespace,
                    body,
                    field_manager=field_manager,
                    force=True,
                    _content_type=APPLY_PATCH_CONTENT_TYPE,
                )
            )

    async def delete(self, name: str) -> dict[str, Any]:
        with _api_errors(f"Deleting Pod {name}"):
            return self._to_doc(
                await self._core.delete_namespaced_pod(name, self._namespace)
            )

    async def read_logs(
        self, name: str, tail_lines: int | None = None, container: str | None = None
    ) -> bytes:
        kwargs: dict[str, Any] = {}
        if tail_lines is not None:
            kwargs["tail_lines"] = tail_lines
        if container is not None:
            kwargs["container"] = container
        chunks: list[bytes] = []
        with _api_errors(f"Reading logs of Pod {name}"):
            response = await self._core.read_namespaced_pod_log(
                name, self._namespace, _preload_content=False, **kwargs
            )
            try:
                if response.status >= 400:
                    raise ApiError(
                        f"Reading logs of Pod {name} failed: {await response.text()}",
                        status=response.status,
                    )
                async for chunk in response.content.iter_any():
                    chunks.append(chunk)
            finally:
                response.release()
        return b"".join(chunks)


class NodeApi(KubernetesResourceApi):
    """Calls for cluster Nodes."""

    kind = NODE_KIND

    def __init__(self, api_client: client.ApiClient, namespace: str) -> None:
        """Initialize NodeApi."""
        super().__init__(api_client, namespace)
        self._core = client.CoreV1Api(api_client)

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        return self._core.list_node, {}

    async def read(self, name: str) -> dict[str, Any]:
        with _api_errors(f"Reading Node {name}"):
            return self._to_doc(await self._core.read_node(name))

    async def create(self, body: dict[str, Any]) -> dict[str, Any]:
        with _api_errors("Creating Node"):
            return self._to_doc(await self._core.create_node(body))

    async def apply(
        self, name: str, body: dict[str, Any], field_manager: str
    ) -> dict[str, Any]:
        with _api_errors(f"Applying Node {name}"):
            return self._to_doc(
                await self._core.patch_node(
                    name,
                    body,
                    field_manager=field_manager,
                    force=True,
                    _content_type=APPLY_PATCH_CONTENT_TYPE,
                )
            )

    async def delete(self, name: str) -> dict[str, Any]:
        with _api_errors(f"Deleting Node {name}"):
            return self._to_doc(await self._core.delete_node(name))


class CustomResourceDefinitionApi(KubernetesResourceApi):
    """Calls for CustomResourceDefinitions."""

    kind = CRD_KIND

    def __init__(self, api_client: client.ApiClient, namespace: str) -> None:
        """Initialize CustomResourceDefinitionApi."""
        super().__init__(api_client, namespace)
        self._extensions = client.ApiextensionsV1Api(api_client)

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        return self._extensions.list_custom_resource_definition, {}

    async def read(self, name: str) -> dict[str, Any]:
        with _api_errors(f"Reading CustomResourceDefinition {name}"):
            return self._to_doc(
                await self._extensions.read_custom_resource_definition(name)
            )

    async def create(self, body: dict[str, Any]) -> dict[str, Any]:
        with _api_errors("Creating CustomResourceDefinition"):
            return self._to_doc(
                await self._extensions.create_custom_resource_definition(body)
            )

    async def apply(
        self, name: str, body: dict[str, Any], field_manager: str
    ) -> dict[str, Any]:
        with _api_errors(f"Applying CustomResourceDefinition {name}"):
            return self._to_doc(
                await self._extensions.patch_custom_resource_definition(
                    name,
                    body,
                    field_manager=field_manager,
                    force=True,
                    _content_type=APPLY_PATCH_CONTENT_TYPE,
                )
            )

    async def delete(self, name: str) -> dict[str, Any]:
        with _api_errors(f"Deleting CustomResourceDefinition {name}"):
            return self._to_doc(
                await self._extensions.delete_custom_resource_definition(name)
            )


class RepositoryApi(KubernetesResourceApi):
    """Calls for Stackable Repository custom objects in the namespace under test."""

    kind = REPOSITORY_KIND

    def __init__(self, api_client: client.ApiClient, namespace: str) -> None:
        """Initialize RepositoryApi."""
        super().__init__(api_client, namespace)
        self._custom = client.CustomObjectsApi(api_client)

    @property
    def _path(self) -> dict[str, str]:
        return {
            "group": REPOSITORY_GROUP,
            "version": REPOSITORY_VERSION,
            "namespace": self._namespace,
            "plural": REPOSITORY_PLURAL,
        }

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        return self._custom.list_namespaced_custom_object, self._path

    async def read(self, name: str) -> dict[str, Any]:
        with _api_errors(f"Reading Repository {name}"):
            return await self._custom.get_namespaced_custom_object(
                **self._path, name=name
            )

    async def create(self, body: dict[str, Any]) -> dict[str, Any]:
        with _api_errors("Creating Repository"):
            return await self._custom.create_namespaced_custom_object(
                **self._path, body=body
            )

    async def apply(
        self, name: str, body: dict[str, Any], field_manager: str
    ) -> dict[str, Any]:
        with _api_errors(f"Applying Repository {name}"):
            return await self._custom.patch_namespaced_custom_object(
                **self._path,
                name=name,
                body=body,
                field_manager=field_manager,
                force=True,
                _content_type=APPLY_PATCH_CONTENT_TYPE,
            )

    async def delete(self, name: str) -> dict[str, Any]:
        with _api_errors(f"Deleting Repository {name}"):
            return await self._custom.delete_namespaced_custom_object(
                **self._path, name=name
            )


def build_resource_apis(
    api_client: client.ApiClient, namespace: str
) -> dict[str, ResourceApi]:
    """Return the calls for every supported kind keyed by kind."""
    apis: list[ResourceApi] = [
        PodApi(api_client, namespace),
        NodeApi(api_client, namespace),
        CustomResourceDefinitionApi(api_client, namespace),
        RepositoryApi(api_client, namespace),
    ]
    return {api.kind: api for api in apis}
