"""The metadata document describing the packages of a Stackable repository."""

from collections.abc import Iterable
from dataclasses import dataclass, field
import json

from mashumaro import DataClassDictMixin

from agent_integration.package import TestPackage

__all__ = [
    "PackageVersion",
    "RepositoryMetadata",
    "METADATA_VERSION",
    "SHA512",
]

METADATA_VERSION = "1"
SHA512 = "SHA512"


@dataclass
class PackageVersion(DataClassDictMixin):
    """A version of a package available in the repository."""

    version: str
    """The version of the package."""

    path: str
    """The location of the archive relative to the repository root."""

    hashes: dict[str, str] = field(default_factory=dict)
    """Digests of the archive keyed by hash algorithm."""

    @classmethod
    def from_package(cls, package: TestPackage) -> "PackageVersion":
        """Describe the archive of the given package."""
        return cls(
            version=package.version,
            path=package.repository_path,
            hashes={SHA512: package.hash()},
        )


@dataclass
class RepositoryMetadata(DataClassDictMixin):
    """Packages of a repository grouped by package name."""

    version: str = METADATA_VERSION
    """The version of the metadata format."""

    packages: dict[str, list[PackageVersion]] = field(default_factory=dict)
    """Available versions of each package in insertion order."""

    @classmethod
    def from_packages(cls, packages: Iterable[TestPackage]) -> "RepositoryMetadata":
        """Build the metadata for the given packages."""
        grouped: dict[str, list[PackageVersion]] = {}
        for package in packages:
            grouped.setdefault(package.name, []).append(
                PackageVersion.from_package(package)
            )
        return cls(packages=grouped)

    def to_json(self) -> str:
        """Return the metadata as a JSON document."""
        return json.dumps(self.to_dict())
