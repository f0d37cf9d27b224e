"""The flake being deployed: a resolved, immutable build source."""
from __future__ import annotations

import json
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .destination import Destination
from .errors import SourceError
from .runner import CommandRunner

_BARE_ATTRIBUTE = re.compile(r"^[A-Za-z_][A-Za-z0-9_'-]*$")


@dataclass(frozen=True)
class Flake:
    """A flake source directory and the store path ``nix`` resolved it to."""

    source_directory: Path
    resolved_path: Path

    @classmethod
    def from_path(cls, directory: str | Path, *, nix_bin: str = "nix") -> Flake:
        """Resolve *directory* via ``nix flake metadata --json``."""
        source = Path(directory).expanduser()
        if not source.is_dir():
            raise SourceError(f"Flake directory {source} does not exist.")
        try:
            result = subprocess.run(  # noqa: S603
                [nix_bin, "flake", "metadata", "--json"],
                cwd=source,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SourceError(f"{nix_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or "no output"
            raise SourceError(f"nix flake metadata failed for {source}: {message}")
        try:
            metadata = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise SourceError(f"nix flake metadata returned invalid JSON for {source}: {exc}") from exc
        path = metadata.get("path") if isinstance(metadata, dict) else None
        if not isinstance(path, str) or not path:
            raise SourceError(f"nix flake metadata for {source} did not report a store path.")
        return cls(source_directory=source, resolved_path=Path(path))

    def nixos_system_config(self, system_name: str) -> str:
        """Return the installable naming the NixOS system *system_name*."""
        attribute = system_name if _BARE_ATTRIBUTE.match(system_name) else json.dumps(system_name)
        return (
            f"{self.resolved_path}#nixosConfigurations.{attribute}"
            ".config.system.build.toplevel"
        )

    async def copy_closure(
        self,
        destination: Destination,
        runner: CommandRunner,
        *,
        nix_bin: str = "nix",
        ssh_options: Sequence[str] = (),
    ) -> None:
        """Copy the flake source closure to *destination*, streaming progress."""
        sshopts = [f"-o{option}" for option in ssh_options]
        if destination.port is not None:
            sshopts.extend(["-p", str(destination.port)])
        env = {"NIX_SSHOPTS": " ".join(sshopts)} if sshopts else None
        runner.log.info("Copying flake to %s", destination.url_authority)
        await runner.run(
            [
                nix_bin,
                "copy",
                "--substitute-on-destination",
                "--to",
                f"ssh://{destination.url_authority}",
                str(self.resolved_path),
            ],
            env=env,
        )


__all__ = ["Flake"]
