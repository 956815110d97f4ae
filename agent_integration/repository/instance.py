"""Stackable repositories registered in the cluster under test.

A `RepositoryInstance` ties a repository server to the Repository resource
pointing at it, so that both are set up and torn down together:
```python
instance = await RepositoryBuilder("test-repository").package(service).run(client)
try:
    ...
finally:
    await instance.close(client)
```
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
import enum
import logging

from agent_integration.exceptions import (
    AgentTestException,
    RepositoryCloseError,
    ShutdownError,
)
from agent_integration.kube import KubeClient, TestKubeClient
from agent_integration.manifest import (
    Repository,
    RepositorySpec,
    RepoType,
    repository_crd,
)
from agent_integration.package import TestPackage

from .server import RepositoryServer, ShutdownHandle

__all__ = [
    "StackableRepository",
    "InstanceState",
    "RepositoryInstance",
    "RepositoryBuilder",
    "SERVE",
    "setup_repository",
    "setup_repository_async",
]

_LOGGER = logging.getLogger(__name__)

INTEGRATION_TEST_REPOSITORY = "integration-test-repository"
INTEGRATION_TEST_REPOSITORY_URL = (
    "https://raw.githubusercontent.com/stackabletech/integration-test-repo/main/"
)


class _Serve(enum.Enum):
    SERVE = "serve"


SERVE = _Serve.SERVE
"""Serve the packages of the repository instead of using an explicit url."""

RepositoryUri = str | None | _Serve


@dataclass
class StackableRepository:
    """Named Stackable repository with test packages."""

    name: str
    """The name of the Repository resource."""

    packages: list[TestPackage] = field(default_factory=list)
    """The packages provided by the repository."""


class InstanceState(enum.Enum):
    """Lifecycle state of a repository instance."""

    BUILDING = "building"
    RUNNING = "running"
    CLOSED = "closed"
    FAILED = "failed"


def _repository_doc(
    name: str, namespace: str, repo_type: RepoType, url: str | None
) -> dict:
    properties = {"url": url} if url is not None else {}
    return Repository(
        name=name,
        namespace=namespace,
        spec=RepositorySpec(repo_type=repo_type, properties=properties),
    ).to_doc()


class RepositoryInstance:
    """A repository server together with the Repository resource pointing at it."""

    def __init__(
        self,
        repository: StackableRepository,
        repo_type: RepoType = RepoType.STACKABLE_REPO,
        uri: RepositoryUri = SERVE,
        host: str | None = None,
    ) -> None:
        """Initialize RepositoryInstance.

        An explicit uri, or None for a repository without url, replaces
        serving the packages.
        """
        self._repository = repository
        self._repo_type = repo_type
        self._uri = uri
        self._host = host
        self._resource: Repository | None = None
        self._shutdown: ShutdownHandle | None = None
        self._url: str | None = None
        self.state = InstanceState.BUILDING

    @property
    def name(self) -> str:
        """Return the name of the repository."""
        return self._repository.name

    @property
    def url(self) -> str | None:
        """Return the url registered for the repository."""
        return self._url

    @property
    def resource(self) -> Repository:
        """Return the registered Repository resource."""
        if self._resource is None:
            raise ValueError(f"Repository {self.name} is not registered")
        return self._resource

    async def start(self, client: KubeClient) -> "RepositoryInstance":
        """Start the server, if serving, and register the repository.

        The server is shut down again if the registration fails.
        """
        if self.state != InstanceState.BUILDING:
            raise ValueError(
                f"Repository {self.name} cannot start when {self.state.value}"
            )
        if self._uri is SERVE:
            server = RepositoryServer(self._repository.packages)
            try:
                self._url, self._shutdown = await server.start(self._host)
            except BaseException:
                self.state = InstanceState.FAILED
                raise
        else:
            self._url = self._uri

        try:
            self._resource = await client.create(
                Repository,
                _repository_doc(
                    self.name, client.namespace, self._repo_type, self._url
                ),
            )
        except BaseException:
            self.state = InstanceState.FAILED
            if self._shutdown is not None:
                _LOGGER.debug("Registration of %s failed, stopping server", self.name)
                self._shutdown.send()
                await self._shutdown.wait_closed()
            raise
        self.state = InstanceState.RUNNING
        _LOGGER.info("Repository %s registered with url %s", self.name, self._url)
        return self

    async def close(self, client: KubeClient) -> None:
        """Delete the Repository resource and shut the server down.

        Both steps are attempted and their failures are reported together.
        """
        if self.state != InstanceState.RUNNING:
            raise ValueError(
                f"Repository {self.name} cannot close when {self.state.value}"
            )
        self.state = InstanceState.CLOSED
        errors: list[str] = []

        try:
            await client.delete(self.resource)
        except AgentTestException as err:
            _LOGGER.warning("Repository %s could not be deleted: %s", self.name, err)
            errors.append(f"Repository [{self.name}] could not be deleted: {err}")
        finally:
            if self._shutdown is not None:
                try:
                    self._shutdown.send()
                except ShutdownError as err:
                    _LOGGER.warning(
                        "Repository server %s could not be shut down", self.name
                    )
                    errors.append(
                        f"Repository server [{self.name}] could not be shut down: {err}"
                    )
                else:
                    await self._shutdown.wait_closed()

        if errors:
            raise RepositoryCloseError(self.name, errors)
        _LOGGER.info("Repository %s closed", self.name)


class RepositoryBuilder:
    """Builder for a repository instance.

    Without packages the instance serves an empty repository.
    """

    def __init__(self, name: str) -> None:
        """Initialize RepositoryBuilder with the mandatory repository name."""
        self._name = name
        self._packages: list[TestPackage] = []
        self._repo_type = RepoType.STACKABLE_REPO
        self._uri: RepositoryUri = SERVE
        self._host: str | None = None

    def package(self, package: TestPackage) -> "RepositoryBuilder":
        """Add a package to the repository."""
        self._packages.append(package)
        return self

    def packages(self, packages: Iterable[TestPackage]) -> "RepositoryBuilder":
        """Add several packages to the repository."""
        self._packages.extend(packages)
        return self

    def repo_type(self, repo_type: RepoType) -> "RepositoryBuilder":
        """Set the type of the repository."""
        self._repo_type = repo_type
        return self

    def uri(self, uri: str | None) -> "RepositoryBuilder":
        """Register the given url, or no url at all, instead of serving packages."""
        self._uri = uri
        return self

    def host(self, host: str) -> "RepositoryBuilder":
        """Bind the server to the given address instead of the default interface."""
        self._host = host
        return self

    def build(self) -> RepositoryInstance:
        """Return the instance without starting it."""
        return RepositoryInstance(
            StackableRepository(self._name, list(self._packages)),
            repo_type=self._repo_type,
            uri=self._uri,
            host=self._host,
        )

    async def run(self, client: KubeClient) -> RepositoryInstance:
        """Start the instance and register the repository."""
        return await self.build().start(client)


def _integration_test_repository_doc(namespace: str) -> dict:
    return _repository_doc(
        INTEGRATION_TEST_REPOSITORY,
        namespace,
        RepoType.STACKABLE_REPO,
        INTEGRATION_TEST_REPOSITORY_URL,
    )


async def setup_repository_async(client: KubeClient) -> Repository:
    """Register the Repository definition and the public integration test repository."""
    await client.apply_crd(repository_crd())
    return await client.apply(
        Repository, _integration_test_repository_doc(client.namespace)
    )


def setup_repository(client: TestKubeClient) -> Repository:
    """Register the Repository definition and the public integration test repository."""
    client.apply_crd(repository_crd())
    return client.apply(
        Repository, _integration_test_repository_doc(client.client.namespace)
    )
