"""Operating system adapters for deploy-flake."""
from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from ..config import SshConfig
from ..destination import Destination, Flavor
from ..errors import DestinationError
from ..logging import LogRouter
from ..session import open_session
from .base import BuiltConfiguration, DeployState, OperatingSystem, Verb
from .nixos import NixosError, NixosSystem

ADAPTERS: dict[Flavor, type[NixosSystem]] = {
    Flavor.NIXOS: NixosSystem,
}


@asynccontextmanager
async def connect(
    destination: Destination,
    *,
    ssh: SshConfig,
    router: LogRouter,
    nix_bin: str = "nix",
) -> AsyncIterator[OperatingSystem]:
    """Open a session to *destination* and wrap it in its flavor's adapter."""
    adapter = ADAPTERS.get(destination.os_flavor)
    if adapter is None:
        raise DestinationError(f"No adapter for OS flavor {destination.os_flavor.value!r}.")
    async with open_session(destination, ssh, router) as session:
        yield adapter(session=session, nix_bin=nix_bin)


__all__ = [
    "ADAPTERS",
    "BuiltConfiguration",
    "DeployState",
    "NixosError",
    "NixosSystem",
    "OperatingSystem",
    "Verb",
    "connect",
]
