"""Logging for deploy-flake: channel routing and the structured operations log.

Two channels exist. Orchestrator narration goes to the ``deploy_flake``
logger; every line produced by a local or remote subprocess goes to
``deploy_flake.output``, tagged with its origin (``O`` for stdout, ``E`` for
stderr). Each channel carries its own level so either can be silenced
independently. A :class:`LogRouter` is built once by the CLI and handed to
every component that logs.

:class:`StructuredLogger` appends one JSON record per CLI operation to
``operations.jsonl`` so deployments leave an audit trail.
"""
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Iterator, Mapping, MutableMapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

NARRATION_CHANNEL = "deploy_flake"
OUTPUT_CHANNEL = f"{NARRATION_CHANNEL}.output"
SILENT = logging.CRITICAL + 1

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def level_from_name(name: str | int) -> int:
    """Translate a configured level name into a :mod:`logging` level."""
    if isinstance(name, int):
        return name
    try:
        return _LEVELS[name.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown log level: {name!r}") from None


class ChannelFormatter(logging.Formatter):
    """Prefix records with their destination and, for subprocess lines, origin."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        origin = getattr(record, "origin", None)
        if origin:
            message = f"{origin}| {message}"
        destination = getattr(record, "destination", None)
        if destination:
            message = f"[{destination}] {message}"
        return message


class DestinationLog(logging.LoggerAdapter):
    """Logger adapter that stamps every record with the destination it concerns."""

    def process(
        self,
        msg: Any,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


@dataclass(frozen=True)
class LogRouter:
    """Routes narration and subprocess output onto separate logging channels."""

    narration: logging.Logger
    output: logging.Logger

    @classmethod
    def configure(
        cls,
        *,
        level: str | int = "info",
        subprocess_level: str | int = "info",
        console: Console | None = None,
        handler: logging.Handler | None = None,
    ) -> LogRouter:
        """Install a single handler on the narration channel and set both levels."""
        narration = logging.getLogger(NARRATION_CHANNEL)
        output = logging.getLogger(OUTPUT_CHANNEL)
        for existing in list(narration.handlers):
            if isinstance(existing.formatter, ChannelFormatter):
                narration.removeHandler(existing)
        if handler is None:
            handler = RichHandler(
                console=console or Console(stderr=True),
                show_path=False,
                markup=False,
                rich_tracebacks=False,
            )
        handler.setFormatter(ChannelFormatter("%(message)s"))
        narration.addHandler(handler)
        narration.setLevel(level_from_name(level))
        output.setLevel(level_from_name(subprocess_level))
        return cls(narration=narration, output=output)

    @classmethod
    def null(cls) -> LogRouter:
        """Return a router using the channel loggers without installing handlers."""
        return cls(
            narration=logging.getLogger(NARRATION_CHANNEL),
            output=logging.getLogger(OUTPUT_CHANNEL),
        )

    def for_destination(self, destination: str) -> DestinationLog:
        """Return a narration logger bound to *destination*."""
        return DestinationLog(self.narration, {"destination": destination})

    def output_for(self, destination: str) -> DestinationLog:
        """Return a subprocess output logger bound to *destination*."""
        return DestinationLog(self.output, {"destination": destination})


# ----------------------------------------------------------------------
# Structured operations log
# ----------------------------------------------------------------------


def _json_safe(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


@dataclass
class OperationScope:
    """Collects the outcome of one logged operation."""

    command: str
    op_id: str
    result: dict[str, object] | None = field(default=None)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self.result = {
            "status": "success",
            "message": message,
            "changed": changed,
            "context": _json_safe(dict(context or {})),
        }

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record an outcome that succeeded with caveats."""
        self.result = {
            "status": "warning",
            "message": message,
            "warnings": list(warnings),
            "errors": list(errors),
            "changed": changed,
            "context": _json_safe(dict(context or {})),
        }

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome."""
        self.result = {
            "status": "error",
            "message": message,
            "errors": list(errors) if errors else [message],
            "rc": rc,
            "context": _json_safe(dict(context or {})),
        }


class StructuredLogger:
    """Append-only JSON lines log of CLI operations.

    The logger disables itself rather than failing the command when the log
    directory cannot be created or written to.
    """

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = Path(log_dir)
        self._operations_log_path = self._log_dir / "operations.jsonl"
        self._lock = threading.Lock()
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Record *command* with its outcome once the block exits."""
        scope = OperationScope(command=command, op_id=uuid.uuid4().hex)
        started_at = datetime.now(UTC)
        start = time.perf_counter()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", errors=[repr(exc)])
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(
                {
                    "op_id": scope.op_id,
                    "command": command,
                    "started_at": started_at.isoformat(),
                    "duration_ms": int((time.perf_counter() - start) * 1000),
                    "args": _json_safe(dict(args or {})),
                    "target": _json_safe(dict(target or {})),
                    "result": scope.result,
                }
            )

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=True) + "\n"
        with self._lock:
            try:
                with self._operations_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line)
            except OSError:
                self._enabled = False


__all__ = [
    "ChannelFormatter",
    "DestinationLog",
    "LogRouter",
    "NARRATION_CHANNEL",
    "OUTPUT_CHANNEL",
    "OperationScope",
    "SILENT",
    "StructuredLogger",
    "level_from_name",
]
