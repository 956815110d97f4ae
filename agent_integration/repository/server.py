"""A short lived web server providing a Stackable repository.

The server binds to the address of a network interface reachable from the
agent on an ephemeral port. It serves the repository metadata and the archive
of each package until it is asked to shut down once.
"""

import asyncio
from collections.abc import Iterable
import ipaddress
import logging
import socket

from aiohttp import web
import psutil

from agent_integration.exceptions import NoInterfaceError, ShutdownError
from agent_integration.package import TestPackage

from .metadata import RepositoryMetadata

__all__ = [
    "RepositoryServer",
    "ShutdownHandle",
    "default_ip_address",
]

_LOGGER = logging.getLogger(__name__)

METADATA_PATH = "/metadata.json"
PACKAGE_CONTENT_TYPE = "application/gzip"


def _interface_address(addresses: list) -> str | None:
    """Return the first usable address, preferring IPv4."""
    ipv6: str | None = None
    for address in addresses:
        if address.family == socket.AF_INET:
            return address.address
        if address.family == socket.AF_INET6 and ipv6 is None:
            ip = ipaddress.IPv6Address(address.address.split("%")[0])
            if not ip.is_link_local:
                ipv6 = str(ip)
    return ipv6


def default_ip_address() -> str:
    """Return the address of a network interface which is up and not loopback.

    Usually this is the address of the default interface.
    """
    stats = psutil.net_if_stats()
    for name, addresses in psutil.net_if_addrs().items():
        if (stat := stats.get(name)) is None or not stat.isup:
            continue
        if any(
            address.family in (socket.AF_INET, socket.AF_INET6)
            and ipaddress.ip_address(address.address.split("%")[0]).is_loopback
            for address in addresses
        ):
            continue
        if (address := _interface_address(addresses)) is not None:
            _LOGGER.debug("Using address %s of interface %s", address, name)
            return address
    raise NoInterfaceError(
        "No network interface found which is up, bound to an IP address, "
        "and not the loopback interface"
    )


def _url(host: str, port: int) -> str:
    if ipaddress.ip_address(host).version == 6:
        return f"http://[{host}]:{port}/"
    return f"http://{host}:{port}/"


class ShutdownHandle:
    """Single use signal which stops a running repository server."""

    def __init__(self, event: asyncio.Event, task: asyncio.Task) -> None:
        """Initialize ShutdownHandle."""
        self._event = event
        self._task = task

    @property
    def sent(self) -> bool:
        """Return True if the shutdown signal was sent."""
        return self._event.is_set()

    def send(self) -> None:
        """Signal the server to stop accepting connections and drain.

        Raises ShutdownError if the signal was sent before. Sending to a
        server which already exited has no effect.
        """
        if self._event.is_set():
            raise ShutdownError("Shutdown signal was already sent")
        self._event.set()
        if self._task.done():
            _LOGGER.warning("Shutdown requested for a server which already exited")

    async def wait_closed(self) -> None:
        """Wait until the server released its listener."""
        await self._task


class RepositoryServer:
    """Web server for the packages of a repository.

    The packages are captured when the server is created.
    """

    def __init__(self, packages: Iterable[TestPackage]) -> None:
        """Initialize RepositoryServer."""
        self._packages = tuple(packages)
        self._archives = {
            f"/{package.repository_path}": package for package in self._packages
        }

    def _app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(METADATA_PATH, self._handle_metadata)
        app.router.add_get("/{path:.*}", self._handle_package)
        return app

    async def _handle_metadata(self, request: web.Request) -> web.Response:
        _LOGGER.debug("Serving %s", request.path)
        metadata = RepositoryMetadata.from_packages(self._packages)
        return web.json_response(metadata.to_dict())

    async def _handle_package(self, request: web.Request) -> web.Response:
        if (package := self._archives.get(request.path)) is None:
            _LOGGER.debug("No package at %s", request.path)
            raise web.HTTPNotFound()
        _LOGGER.debug("Serving %s", request.path)
        return web.Response(body=package.binary(), content_type=PACKAGE_CONTENT_TYPE)

    async def start(self, host: str | None = None) -> tuple[str, ShutdownHandle]:
        """Start serving and return the repository url and the shutdown handle.

        The server binds to the default interface unless a host is given.
        """
        if host is None:
            host = default_ip_address()
        runner = web.AppRunner(self._app())
        await runner.setup()
        try:
            site = web.TCPSite(runner, host, 0)
            await site.start()
        except BaseException:
            await runner.cleanup()
            raise
        bound_host, port = runner.addresses[0][:2]
        url = _url(bound_host, port)
        _LOGGER.info("Repository server listening on %s", url)

        event = asyncio.Event()

        async def serve() -> None:
            try:
                await event.wait()
            finally:
                await runner.cleanup()
                _LOGGER.info("Repository server on %s stopped", url)

        task = asyncio.create_task(serve(), name=f"repository-server-{port}")
        return url, ShutdownHandle(event, task)
