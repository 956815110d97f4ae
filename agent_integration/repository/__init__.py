"""Stackable repositories providing test packages to the agent."""

from .instance import (
    SERVE,
    InstanceState,
    RepositoryBuilder,
    RepositoryInstance,
    StackableRepository,
    setup_repository,
    setup_repository_async,
)
from .metadata import PackageVersion, RepositoryMetadata
from .server import RepositoryServer, ShutdownHandle, default_ip_address

__all__ = [
    "SERVE",
    "InstanceState",
    "PackageVersion",
    "RepositoryBuilder",
    "RepositoryInstance",
    "RepositoryMetadata",
    "RepositoryServer",
    "ShutdownHandle",
    "StackableRepository",
    "default_ip_address",
    "setup_repository",
    "setup_repository_async",
]
