"""Tests for the resource calls backed by kubernetes_asyncio."""

from collections.abc import AsyncIterator, Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import aiohttp
from kubernetes_asyncio import client, watch
from kubernetes_asyncio.client.exceptions import ApiException
import pytest

from agent_integration.config import ClientConfig
from agent_integration.exceptions import ApiError
from agent_integration.kube import KubeClient, WatchEvent, WatchEventType
from agent_integration.kube.api import (
    APPLY_PATCH_CONTENT_TYPE,
    CustomResourceDefinitionApi,
    NodeApi,
    PodApi,
    RepositoryApi,
    build_resource_apis,
)
from agent_integration.manifest import (
    CRD_KIND,
    NODE_KIND,
    POD_KIND,
    REPOSITORY_KIND,
    Pod,
)

POD_DOC = {
    "apiVersion": "v1",
    "kind": "Pod",
    "metadata": {"name": "test-pod", "namespace": "default", "resourceVersion": "41"},
}
STATUS_DOC = {"kind": "Status", "apiVersion": "v1", "status": "Success"}
REPOSITORY_PATH = {
    "group": "stable.stackable.de",
    "version": "v1",
    "namespace": "default",
    "plural": "repositories",
}


class FakeStream:
    """Stands in for the stream of a kubernetes_asyncio watch."""

    def __init__(
        self, events: list[dict[str, Any]], error: Exception | None = None
    ) -> None:
        """Initialize FakeStream with the events to deliver before the error."""
        self._events = events
        self._error = error
        self.closed = False

    async def __aenter__(self) -> "FakeStream":
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.closed = True

    async def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        for event in self._events:
            yield event
        if self._error is not None:
            raise self._error


def watch_event(event_type: str, doc: dict[str, Any]) -> dict[str, Any]:
    """Return an event as decoded by kubernetes_asyncio."""
    return {"type": event_type, "object": Mock(), "raw_object": doc}


@pytest.fixture(name="api_client")
def api_client_fixture() -> Mock:
    """Fixture for an API client returning plain documents unchanged."""
    api_client = Mock()
    api_client.sanitize_for_serialization.side_effect = lambda obj: obj
    return api_client


@pytest.fixture(name="core")
def core_fixture() -> Generator[MagicMock, None, None]:
    """Fixture for the core v1 calls."""
    with patch.object(client, "CoreV1Api") as mock_class:
        yield mock_class.return_value


@pytest.fixture(name="custom")
def custom_fixture() -> Generator[MagicMock, None, None]:
    """Fixture for the custom object calls."""
    with patch.object(client, "CustomObjectsApi") as mock_class:
        yield mock_class.return_value


@pytest.fixture(name="mock_watch")
def mock_watch_fixture() -> Generator[MagicMock, None, None]:
    """Fixture for the watch of kubernetes_asyncio."""
    with patch.object(watch, "Watch") as mock_class:
        yield mock_class.return_value


def test_build_resource_apis(api_client: Mock) -> None:
    """Test that every supported kind has its calls."""
    apis = build_resource_apis(api_client, "default")
    assert sorted(apis) == sorted([POD_KIND, NODE_KIND, CRD_KIND, REPOSITORY_KIND])
    assert isinstance(apis[POD_KIND], PodApi)
    assert isinstance(apis[NODE_KIND], NodeApi)
    assert isinstance(apis[CRD_KIND], CustomResourceDefinitionApi)
    assert isinstance(apis[REPOSITORY_KIND], RepositoryApi)


async def test_read_pod(api_client: Mock, core: MagicMock) -> None:
    """Test reading a pod in the namespace under test."""
    core.read_namespaced_pod = AsyncMock(return_value=POD_DOC)
    api = PodApi(api_client, "default")

    assert await api.read("test-pod") == POD_DOC
    core.read_namespaced_pod.assert_awaited_once_with("test-pod", "default")


async def test_api_exception(api_client: Mock, core: MagicMock) -> None:
    """Test that a rejected call is reported with its status."""
    core.read_namespaced_pod = AsyncMock(
        side_effect=ApiException(status=404, reason="Not Found")
    )
    api = PodApi(api_client, "default")

    with pytest.raises(
        ApiError, match="Reading Pod test-pod failed: Not Found"
    ) as exc_info:
        await api.read("test-pod")
    assert exc_info.value.status == 404
    assert exc_info.value.not_found


async def test_connection_error(api_client: Mock, core: MagicMock) -> None:
    """Test that an unreachable API server is reported."""
    core.list_namespaced_pod = AsyncMock(
        side_effect=aiohttp.ClientConnectionError("Connection refused")
    )
    api = PodApi(api_client, "default")

    with pytest.raises(ApiError, match="Connection refused") as exc_info:
        await api.list()
    assert exc_info.value.status is None
    assert not exc_info.value.not_found


async def test_list_labeled(api_client: Mock, core: MagicMock) -> None:
    """Test listing pods with a label selector."""
    core.list_namespaced_pod = AsyncMock(return_value={"items": [POD_DOC]})
    api = PodApi(api_client, "default")

    assert await api.list("app=echo") == [POD_DOC]
    core.list_namespaced_pod.assert_awaited_once_with(
        namespace="default", label_selector="app=echo"
    )


async def test_list_nodes(api_client: Mock, core: MagicMock) -> None:
    """Test listing cluster scoped nodes."""
    core.list_node = AsyncMock(return_value={"items": None})
    api = NodeApi(api_client, "default")

    assert await api.list("kubernetes.io/arch=stackable-linux") == []
    core.list_node.assert_awaited_once_with(
        label_selector="kubernetes.io/arch=stackable-linux"
    )


async def test_apply_pod(api_client: Mock, core: MagicMock) -> None:
    """Test that apply is a forced server-side apply."""
    core.patch_namespaced_pod = AsyncMock(return_value=POD_DOC)
    api = PodApi(api_client, "default")

    assert await api.apply("test-pod", POD_DOC, "agent_integration_test") == POD_DOC
    core.patch_namespaced_pod.assert_awaited_once_with(
        "test-pod",
        "default",
        POD_DOC,
        field_manager="agent_integration_test",
        force=True,
        _content_type=APPLY_PATCH_CONTENT_TYPE,
    )


async def test_apply_crd(api_client: Mock) -> None:
    """Test that definitions are applied through the apiextensions calls."""
    doc = {"metadata": {"name": "repositories.stable.stackable.de"}}
    with patch.object(client, "ApiextensionsV1Api") as mock_class:
        extensions = mock_class.return_value
        extensions.patch_custom_resource_definition = AsyncMock(return_value=doc)
        api = CustomResourceDefinitionApi(api_client, "default")

        assert await api.apply(doc["metadata"]["name"], doc, "manager") == doc

    extensions.patch_custom_resource_definition.assert_awaited_once_with(
        "repositories.stable.stackable.de",
        doc,
        field_manager="manager",
        force=True,
        _content_type=APPLY_PATCH_CONTENT_TYPE,
    )


async def test_repository_calls(api_client: Mock, custom: MagicMock) -> None:
    """Test the custom object path of Stackable repositories."""
    doc = {"metadata": {"name": "test-repository"}, "spec": {}}
    custom.create_namespaced_custom_object = AsyncMock(return_value=doc)
    custom.get_namespaced_custom_object = AsyncMock(return_value=doc)
    custom.patch_namespaced_custom_object = AsyncMock(return_value=doc)
    custom.delete_namespaced_custom_object = AsyncMock(return_value=STATUS_DOC)
    api = RepositoryApi(api_client, "default")

    assert await api.create(doc) == doc
    custom.create_namespaced_custom_object.assert_awaited_once_with(
        **REPOSITORY_PATH, body=doc
    )
    assert await api.read("test-repository") == doc
    custom.get_namespaced_custom_object.assert_awaited_once_with(
        **REPOSITORY_PATH, name="test-repository"
    )
    assert await api.apply("test-repository", doc, "manager") == doc
    custom.patch_namespaced_custom_object.assert_awaited_once_with(
        **REPOSITORY_PATH,
        name="test-repository",
        body=doc,
        field_manager="manager",
        force=True,
        _content_type=APPLY_PATCH_CONTENT_TYPE,
    )
    assert await api.delete("test-repository") == STATUS_DOC
    custom.delete_namespaced_custom_object.assert_awaited_once_with(
        **REPOSITORY_PATH, name="test-repository"
    )


async def test_watch(api_client: Mock, core: MagicMock, mock_watch: MagicMock) -> None:
    """Test watching a single pod from a resource version."""
    stream = FakeStream(
        [watch_event("ADDED", POD_DOC), watch_event("MODIFIED", POD_DOC)]
    )
    mock_watch.stream.return_value = stream
    api = PodApi(api_client, "default")

    events = [event async for event in api.watch("test-pod", "7", 5)]

    assert events == [
        WatchEvent(WatchEventType.ADDED, POD_DOC),
        WatchEvent(WatchEventType.MODIFIED, POD_DOC),
    ]
    assert stream.closed
    mock_watch.stream.assert_called_once_with(
        core.list_namespaced_pod,
        namespace="default",
        field_selector="metadata.name=test-pod",
        resource_version="7",
        timeout_seconds=5,
    )


async def test_watch_repository(
    api_client: Mock, custom: MagicMock, mock_watch: MagicMock
) -> None:
    """Test watching a repository through the custom object list call."""
    mock_watch.stream.return_value = FakeStream([])
    api = RepositoryApi(api_client, "default")

    assert [event async for event in api.watch("test-repository", "0", 10)] == []
    mock_watch.stream.assert_called_once_with(
        custom.list_namespaced_custom_object,
        **REPOSITORY_PATH,
        field_selector="metadata.name=test-repository",
        resource_version="0",
        timeout_seconds=10,
    )


async def test_watch_expired(
    api_client: Mock, core: MagicMock, mock_watch: MagicMock
) -> None:
    """Test that a watch rejected by the API server is reported."""
    mock_watch.stream.return_value = FakeStream(
        [watch_event("ADDED", POD_DOC)],
        error=ApiException(status=410, reason="Expired: too old resource version"),
    )
    api = PodApi(api_client, "default")

    events = []
    with pytest.raises(ApiError, match="Watching Pod test-pod failed") as exc_info:
        async for event in api.watch("test-pod", "1", 5):
            events.append(event)
    assert exc_info.value.status == 410
    assert len(events) == 1


def log_response(status: int, chunks: list[bytes], text: str = "") -> MagicMock:
    """Return a log response which is read without preloading."""

    async def iter_any() -> AsyncIterator[bytes]:
        for chunk in chunks:
            yield chunk

    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=text)
    response.content.iter_any = iter_any
    return response


async def test_read_logs(api_client: Mock, core: MagicMock) -> None:
    """Test that the chunks of the log stream are joined."""
    response = log_response(200, [b"line 1\nli", b"ne 2\n"])
    core.read_namespaced_pod_log = AsyncMock(return_value=response)
    api = PodApi(api_client, "default")

    data = await api.read_logs("test-pod", tail_lines=2, container="echo-service")

    assert data == b"line 1\nline 2\n"
    core.read_namespaced_pod_log.assert_awaited_once_with(
        "test-pod",
        "default",
        _preload_content=False,
        tail_lines=2,
        container="echo-service",
    )
    response.release.assert_called_once()


async def test_read_logs_without_options(api_client: Mock, core: MagicMock) -> None:
    """Test that unset options are not passed on."""
    core.read_namespaced_pod_log = AsyncMock(return_value=log_response(200, []))
    api = PodApi(api_client, "default")

    assert await api.read_logs("test-pod") == b""
    core.read_namespaced_pod_log.assert_awaited_once_with(
        "test-pod", "default", _preload_content=False
    )


async def test_read_logs_rejected(api_client: Mock, core: MagicMock) -> None:
    """Test that an error status of the log stream is reported."""
    response = log_response(400, [b"unused"], text="container is not running")
    core.read_namespaced_pod_log = AsyncMock(return_value=response)
    api = PodApi(api_client, "default")

    with pytest.raises(ApiError, match="container is not running") as exc_info:
        await api.read_logs("test-pod")
    assert exc_info.value.status == 400
    response.release.assert_called_once()


async def test_delete_completed(
    api_client: Mock, core: MagicMock, mock_watch: MagicMock
) -> None:
    """Test that a Status response ends the deletion without a watch."""
    core.delete_namespaced_pod = AsyncMock(return_value=STATUS_DOC)
    kube_client = KubeClient(build_resource_apis(api_client, "default"), ClientConfig())

    await kube_client.delete(Pod.parse_doc(POD_DOC))

    core.delete_namespaced_pod.assert_awaited_once_with("test-pod", "default")
    mock_watch.stream.assert_not_called()


async def test_delete_pending(
    api_client: Mock, core: MagicMock, mock_watch: MagicMock
) -> None:
    """Test that a pending deletion is watched from the returned version."""
    pending = {
        **POD_DOC,
        "metadata": {
            **POD_DOC["metadata"],
            "resourceVersion": "42",
            "deletionTimestamp": "2024-01-01T00:00:00Z",
        },
    }
    core.delete_namespaced_pod = AsyncMock(return_value=pending)
    mock_watch.stream.return_value = FakeStream([watch_event("DELETED", pending)])
    kube_client = KubeClient(build_resource_apis(api_client, "default"), ClientConfig())

    await kube_client.delete(Pod.parse_doc(POD_DOC))

    mock_watch.stream.assert_called_once()
    assert mock_watch.stream.call_args.kwargs["resource_version"] == "42"
    assert mock_watch.stream.call_args.kwargs["field_selector"] == (
        "metadata.name=test-pod"
    )
