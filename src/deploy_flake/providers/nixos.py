"""NixOS adapter: translates deployment verbs into remote commands."""
from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import PurePosixPath

from ..errors import BuildResultError, CommandError, DeployFlakeError
from ..session import SshSession
from ..source import Flake
from .base import BuiltConfiguration, Verb

SYSTEM_PROFILE = "/nix/var/nix/profiles/system"
ACTIVATION_SCRIPT = "bin/switch-to-configuration"
DEFAULT_PREFLIGHT_SCRIPT = "bin/preflight-check"
BUILD_DIRECTORY = "/tmp"


class NixosError(DeployFlakeError):
    """Raised when a NixOS verb fails on the remote host."""


@dataclass(slots=True)
class NixosSystem:
    """A NixOS host reached through an exclusively owned SSH session."""

    session: SshSession
    nix_bin: str = "nix"

    @property
    def host(self) -> str:
        """Return the host this adapter deploys to."""
        return self.session.host

    def activation_command(self, verb: Verb, path: PurePosixPath) -> list[str]:
        """Return the ``switch-to-configuration`` invocation for *verb*."""
        return [str(path / ACTIVATION_SCRIPT), verb.value]

    def build_command(
        self,
        installable: str,
        build_args: Sequence[str],
        *,
        json_output: bool = False,
    ) -> list[str]:
        """Return the remote ``nix build`` command line."""
        command = ["env", "-C", BUILD_DIRECTORY, self.nix_bin, "build", "-L", "--no-link"]
        command.extend(build_args)
        if json_output:
            command.append("--json")
        command.append(installable)
        return command

    async def hostname(self) -> str:
        """Return the host name the remote system reports for itself."""
        _, stdout = await self.session.capture("hostname")
        name = stdout.decode("utf-8", errors="replace").strip()
        if not name:
            raise NixosError(f"{self.host} reported an empty hostname.")
        return name

    async def preflight_check_system(self) -> None:
        """Wait for systemd to settle and refuse to deploy to a degraded host."""
        log = self.session.runner.log
        returncode, stdout = await self.session.capture(
            "sudo",
            "systemctl",
            "is-system-running",
            "--wait",
            check=False,
        )
        state = stdout.decode("utf-8", errors="replace").strip() or "unknown"
        if returncode != 0:
            log.error("System is not healthy (%s). List of failed units follows:", state)
            await self.session.run("sudo", "systemctl", "list-units", "--failed")
            raise NixosError(f"Can not deploy to an unhealthy system (state: {state}).")
        log.info("System is healthy (%s)", state)

    async def preflight_check_closure(
        self,
        built: BuiltConfiguration,
        script: str | None = None,
    ) -> None:
        """Run the new system's self-check executable when it ships one.

        An explicitly named *script* is tried first, then the default
        ``bin/preflight-check``. When neither exists there is nothing to check.
        """
        log = self.session.runner.log
        names = [DEFAULT_PREFLIGHT_SCRIPT]
        if script and script != DEFAULT_PREFLIGHT_SCRIPT:
            relative = PurePosixPath(script)
            if relative.is_absolute() or ".." in relative.parts:
                raise NixosError(
                    f"Preflight script {script!r} must stay inside the built system {built.path}."
                )
            names.insert(0, script)

        candidate: PurePosixPath | None = None
        for name in names:
            path = built.path / name
            returncode, _ = await self.session.capture("test", "-x", str(path), check=False)
            if returncode == 0:
                candidate = path
                break
            if name == script:
                log.warning("Preflight script %s is not present; trying the default.", path)
        if candidate is None:
            log.debug("No preflight script in %s; nothing to check.", built.path)
            return
        log.info("Running preflight check %s", candidate)
        try:
            await self.session.run(str(candidate))
        except CommandError as exc:
            raise NixosError(
                f"Preflight check {candidate} rejected the new system: {exc}"
            ) from exc

    async def build_flake(
        self,
        flake: Flake,
        config_name: str | None,
        build_args: Sequence[str] = (),
    ) -> BuiltConfiguration:
        """Build the system on the host and return the single realised output.

        The build runs twice. The first run streams progress to the operator;
        the second asks for ``--json`` output, which is cheap because the
        result is cached by then, and yields the output path without scraping
        build logs.
        """
        log = self.session.runner.log
        system_name = config_name or await self.hostname()
        installable = flake.nixos_system_config(system_name)
        log.info("Building %s", installable)
        try:
            await self.session.run(*self.build_command(installable, build_args))
        except CommandError as exc:
            raise NixosError(f"Could not build {installable}: {exc}") from exc

        try:
            _, stdout = await self.session.capture(
                *self.build_command(installable, build_args, json_output=True)
            )
        except CommandError as exc:
            raise NixosError(f"Could not query the build result of {installable}: {exc}") from exc
        record = _single_build_result(stdout, installable)
        path = PurePosixPath(record["out"])
        log.info("Built %s", path)
        return BuiltConfiguration(
            path=path,
            system_name=system_name,
            system=self,
            derivation_path=record.get("drv"),
        )

    async def set_as_current_generation(self, path: PurePosixPath) -> None:
        """Point the system profile at *path*, creating a new generation."""
        try:
            await self.session.run("sudo", "nix-env", "-p", SYSTEM_PROFILE, "--set", str(path))
        except CommandError as exc:
            raise NixosError(
                f"Could not set {path} as the current generation; the profile "
                f"{SYSTEM_PROFILE} may need manual cleanup: {exc}"
            ) from exc

    async def test_config(self, path: PurePosixPath) -> None:
        """Activate *path* inside a supervised one-shot unit and wait for it."""
        if not path.name:
            raise NixosError(f"Built path has an unexpected format: {path}")
        unit_name = f"{Verb.TEST.value}--{path.name}"
        self.session.runner.log.debug("Running %s in transient unit %s", Verb.TEST.value, unit_name)
        try:
            await self.session.run(
                "sudo",
                "systemd-run",
                f"--working-directory={BUILD_DIRECTORY}",
                "--service-type=oneshot",
                "--send-sighup",
                "--unit",
                unit_name,
                "--wait",
                "--quiet",
                "--pipe",
                # perl in the activation script complains about unset locales
                "--setenv=LC_ALL=C",
                *self.activation_command(Verb.TEST, path),
            )
        except CommandError as exc:
            raise NixosError(f"Testing the system closure {path} failed: {exc}") from exc

    async def update_boot_for_config(self, path: PurePosixPath) -> None:
        """Make *path* the default boot entry."""
        try:
            await self.session.run("sudo", *self.activation_command(Verb.BOOT, path))
        except CommandError as exc:
            raise NixosError(f"Could not set {path} up as the boot system: {exc}") from exc


def _single_build_result(stdout: bytes, installable: str) -> dict[str, str]:
    try:
        results = json.loads(stdout.decode("utf-8", errors="replace"))
    except json.JSONDecodeError as exc:
        raise BuildResultError(f"nix build returned invalid JSON for {installable}: {exc}") from exc
    if not isinstance(results, list) or len(results) != 1:
        count = len(results) if isinstance(results, list) else "no list of"
        raise BuildResultError(
            f"Expected exactly one build result for {installable}, got {count}: {results!r}"
        )
    entry = results[0]
    outputs = entry.get("outputs") if isinstance(entry, dict) else None
    out = outputs.get("out") if isinstance(outputs, dict) else None
    if not isinstance(out, str) or not out:
        raise BuildResultError(f"Build result for {installable} has no 'out' output: {entry!r}")
    record = {"out": out}
    drv = entry.get("drvPath")
    if isinstance(drv, str):
        record["drv"] = drv
    return record


__all__ = [
    "ACTIVATION_SCRIPT",
    "DEFAULT_PREFLIGHT_SCRIPT",
    "NixosError",
    "NixosSystem",
    "SYSTEM_PROFILE",
]
