"""Remote sessions backed by an OpenSSH control master.

A session authenticates once and multiplexes every later command over the
master connection, so each remote verb costs a channel rather than a new
handshake. Sessions belong to exactly one deployment pipeline.
"""
from __future__ import annotations

import shlex
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from .config import SshConfig
from .destination import Destination
from .errors import CommandError, SessionError
from .logging import LogRouter
from .runner import CommandRunner

SSH_TRANSPORT_FAILURE = 255


@dataclass
class SshSession:
    """An authenticated channel to one destination host."""

    destination: Destination
    config: SshConfig
    runner: CommandRunner
    control_dir: Path
    connected: bool = False

    @property
    def host(self) -> str:
        """Return the ``[user@]host`` the session talks to."""
        return self.destination.hostname

    @property
    def control_path(self) -> Path:
        """Return the control socket path of the master connection."""
        return self.control_dir / "master.sock"

    @property
    def master_log(self) -> Path:
        """Return the file the master connection logs its diagnostics into."""
        return self.control_dir / "master.log"

    def ssh_args(self) -> list[str]:
        """Return the ``ssh`` invocation shared by the master and every command."""
        args = [
            self.config.ssh_bin,
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.config.connect_timeout}",
            "-S",
            str(self.control_path),
        ]
        if self.destination.port is not None:
            args.extend(["-p", str(self.destination.port)])
        for option in self.config.options:
            args.extend(["-o", option])
        return args

    def command(self, program: str, *args: str) -> list[str]:
        """Return the local argv that runs ``program args...`` on the remote host."""
        remote = shlex.join([program, *args])
        return [*self.ssh_args(), "-o", "ControlMaster=no", "-T", self.host, "--", remote]

    async def connect(self) -> None:
        """Start the master connection; raise :class:`SessionError` on failure."""
        argv = [
            *self.ssh_args(),
            "-E",
            str(self.master_log),
            "-M",
            "-f",
            "-N",
            "-o",
            "ControlPersist=yes",
            self.host,
        ]
        try:
            await self.runner.run(argv)
        except (CommandError, SessionError) as exc:
            detail = self._master_diagnostics()
            message = f"Could not connect to {self.host}: {exc}"
            if detail:
                message = f"{message}\n{detail}"
            raise SessionError(message) from exc
        self.connected = True
        self.runner.log.debug("Connected to %s", self.host)

    async def run(self, program: str, *args: str) -> None:
        """Run a remote command, streaming its output into the log."""
        self._require_connection()
        await self.runner.run(self.command(program, *args), display=[program, *args])

    async def capture(self, program: str, *args: str, check: bool = True) -> tuple[int, bytes]:
        """Run a remote command and return its exit status and stdout."""
        self._require_connection()
        return await self.runner.capture(
            self.command(program, *args),
            display=[program, *args],
            check=check,
        )

    async def close(self) -> None:
        """Shut the master connection down."""
        if not self.connected:
            return
        self.connected = False
        argv = [*self.ssh_args(), "-O", "exit", self.host]
        try:
            await self.runner.capture(argv, check=True)
        except (CommandError, SessionError) as exc:
            self.runner.log.warning("Could not close the connection to %s cleanly: %s", self.host, exc)

    def _require_connection(self) -> None:
        if not self.connected:
            raise SessionError(f"Session to {self.host} is not connected.")

    def _master_diagnostics(self) -> str:
        try:
            return self.master_log.read_text(encoding="utf-8", errors="replace").strip()
        except OSError:
            return ""


@asynccontextmanager
async def open_session(
    destination: Destination,
    config: SshConfig,
    router: LogRouter,
) -> AsyncIterator[SshSession]:
    """Connect to *destination* for the duration of the ``async with`` block."""
    label = str(destination)
    runner = CommandRunner(
        log=router.for_destination(label),
        output=router.output_for(label),
        host=destination.hostname,
        transport_failure_status=SSH_TRANSPORT_FAILURE,
    )
    with tempfile.TemporaryDirectory(prefix="deploy-flake-") as control_dir:
        session = SshSession(
            destination=destination,
            config=config,
            runner=runner,
            control_dir=Path(control_dir),
        )
        await session.connect()
        try:
            yield session
        finally:
            await session.close()


__all__ = ["SSH_TRANSPORT_FAILURE", "SshSession", "open_session"]
