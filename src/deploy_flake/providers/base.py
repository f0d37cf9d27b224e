"""Operating system adapter interface.

Every supported OS flavor implements the same verb set; the deployment
pipeline only ever talks to this protocol.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Protocol, runtime_checkable

from ..source import Flake


class Verb(str, Enum):
    """Activation verbs understood by ``switch-to-configuration``."""

    TEST = "test"
    BOOT = "boot"


class DeployState(str, Enum):
    """Progress of one destination through the pipeline, in order."""

    DISCONNECTED = "disconnected"
    COPIED = "copied"
    CONNECTED = "connected"
    BUILT = "built"
    HEALTH_CHECKED = "health-checked"
    TESTED = "tested"
    BOOT_COMMITTED = "boot-committed"


@dataclass(frozen=True)
class BuiltConfiguration:
    """A system closure realised on the host of the session that built it."""

    path: PurePosixPath
    system_name: str
    system: OperatingSystem
    derivation_path: str | None = None


@runtime_checkable
class OperatingSystem(Protocol):
    """Verbs that deploy a built system configuration to one host."""

    host: str

    async def preflight_check_system(self) -> None:
        """Fail unless the host reports itself healthy before deployment."""
        ...

    async def preflight_check_closure(
        self,
        built: BuiltConfiguration,
        script: str | None = None,
    ) -> None:
        """Run the built system's own self-check executable, if it ships one."""
        ...

    async def build_flake(
        self,
        flake: Flake,
        config_name: str | None,
        build_args: Sequence[str] = (),
    ) -> BuiltConfiguration:
        """Build the system configuration on the host and identify the result."""
        ...

    async def set_as_current_generation(self, path: PurePosixPath) -> None:
        """Point the system profile at *path*."""
        ...

    async def test_config(self, path: PurePosixPath) -> None:
        """Activate *path* transiently without making it the boot default."""
        ...

    async def update_boot_for_config(self, path: PurePosixPath) -> None:
        """Make *path* the default boot entry."""
        ...


__all__ = ["BuiltConfiguration", "DeployState", "OperatingSystem", "Verb"]
