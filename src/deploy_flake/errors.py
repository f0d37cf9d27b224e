"""Exception hierarchy shared by the deployment engine.

Errors accumulate context as they travel upwards: a :class:`CommandError`
names the command line, the adapter wraps it with the verb that failed and a
:class:`StageError` finally attaches the destination and pipeline stage.
"""
from __future__ import annotations

from collections.abc import Sequence


class DeployFlakeError(RuntimeError):
    """Base class for every error raised by deploy-flake."""


class SourceError(DeployFlakeError):
    """Raised when the flake source cannot be resolved locally."""


class DestinationError(DeployFlakeError, ValueError):
    """Raised when a destination specifier cannot be parsed."""


class SessionError(DeployFlakeError):
    """Raised when a remote session cannot be established or is lost."""


class CommandError(DeployFlakeError):
    """Raised when a command exits with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: int, *, host: str | None = None) -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.host = host
        where = f" on {host}" if host else ""
        super().__init__(
            f"Command {' '.join(self.argv)!r}{where} failed with exit status {returncode}"
        )


class BuildResultError(DeployFlakeError):
    """Raised when ``nix build --json`` does not yield exactly one result."""


class CopyTimeout(DeployFlakeError):
    """Raised when copying the flake source keeps timing out."""


class StageError(DeployFlakeError):
    """A pipeline stage failed for one destination."""

    def __init__(self, destination: str, stage: str, message: str) -> None:
        self.destination = destination
        self.stage = stage
        self.message = message
        super().__init__(f"{destination}: {stage}: {message}")


__all__ = [
    "BuildResultError",
    "CommandError",
    "CopyTimeout",
    "DeployFlakeError",
    "DestinationError",
    "SessionError",
    "SourceError",
    "StageError",
]
