"""Run subprocesses while streaming their output into the log."""
from __future__ import annotations

import asyncio
import logging
import os
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from .errors import CommandError, DeployFlakeError, SessionError

STDOUT = "O"
STDERR = "E"

# nix build -L emits very long lines; the asyncio default limit is 64KiB.
STREAM_LIMIT = 4 * 1024 * 1024


async def log_stream(
    stream: asyncio.StreamReader | None,
    log: logging.LoggerAdapter | logging.Logger,
    origin: str,
) -> None:
    """Emit every line read from *stream* as a log record tagged with *origin*.

    Lines longer than the stream's buffer limit are emitted in limit-sized
    pieces rather than failing the command.
    """
    if stream is None:
        return
    overrun = False
    while True:
        try:
            line = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            if exc.partial:
                _emit_line(log, exc.partial, origin)
            return
        except asyncio.LimitOverrunError as exc:
            _emit_line(log, await stream.read(max(exc.consumed, 1)), origin)
            overrun = True
            continue
        # the newline closing an overlong line arrives on its own
        if not (overrun and line in (b"\n", b"\r\n")):
            _emit_line(log, line, origin)
        overrun = False


def _emit_line(
    log: logging.LoggerAdapter | logging.Logger,
    line: bytes,
    origin: str,
) -> None:
    text = line.decode("utf-8", errors="replace").rstrip("\r\n")
    log.info("%s", text, extra={"origin": origin})


def format_command(argv: Sequence[str]) -> str:
    """Return a shell-quoted rendering of *argv* for log and error messages."""
    return shlex.join(list(argv))


@dataclass
class CommandRunner:
    """Spawn commands, log their output and turn failures into exceptions.

    ``transport_failure_status`` names the exit status that means the transport
    (``ssh``) failed rather than the command it carried; such exits raise
    :class:`SessionError` instead of :class:`CommandError`.
    """

    log: logging.LoggerAdapter | logging.Logger
    output: logging.LoggerAdapter | logging.Logger
    host: str | None = None
    transport_failure_status: int | None = None

    async def run(
        self,
        argv: Sequence[str],
        *,
        display: Sequence[str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Run *argv* to completion, streaming stdout and stderr to the log."""
        shown = list(display or argv)
        self.log.debug("Running %s", format_command(shown))
        process = await self._spawn(argv, env)
        try:
            await asyncio.gather(
                log_stream(process.stdout, self.output, STDOUT),
                log_stream(process.stderr, self.output, STDERR),
                process.wait(),
            )
        finally:
            await _reap(process)
        self.log.debug("Finished %s with status %s", format_command(shown), process.returncode)
        self._check(shown, process.returncode)

    async def capture(
        self,
        argv: Sequence[str],
        *,
        display: Sequence[str] | None = None,
        check: bool = True,
    ) -> tuple[int, bytes]:
        """Run *argv*, returning its exit status and stdout; stderr is logged."""
        shown = list(display or argv)
        self.log.debug("Running %s", format_command(shown))
        process = await self._spawn(argv)
        try:
            stdout, _, _ = await asyncio.gather(
                process.stdout.read() if process.stdout is not None else _empty(),
                log_stream(process.stderr, self.output, STDERR),
                process.wait(),
            )
        finally:
            await _reap(process)
        returncode = process.returncode if process.returncode is not None else -1
        self.log.debug("Finished %s with status %s", format_command(shown), returncode)
        if check or returncode == self.transport_failure_status:
            self._check(shown, returncode)
        return returncode, stdout

    async def _spawn(
        self,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
    ) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                env={**os.environ, **env} if env else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            if self.transport_failure_status is not None:
                raise SessionError(f"{argv[0]} not found: {exc}") from exc
            raise DeployFlakeError(f"{argv[0]} not found: {exc}") from exc

    def _check(self, shown: Sequence[str], returncode: int | None) -> None:
        if returncode == 0:
            return
        status = -1 if returncode is None else returncode
        if self.transport_failure_status is not None and status == self.transport_failure_status:
            raise SessionError(
                f"Lost connection to {self.host or 'remote host'} while running "
                f"{format_command(shown)!r} (ssh exit status {status})"
            )
        raise CommandError(shown, status, host=self.host)


async def _empty() -> bytes:
    return b""


async def _reap(process: asyncio.subprocess.Process) -> None:
    """Kill *process* if it is still running (e.g. after cancellation)."""
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


__all__ = ["CommandRunner", "STDERR", "STDOUT", "format_command", "log_stream"]
