"""Per-destination deployment pipeline.

One pipeline run takes a destination from nothing to a committed boot entry:

1. copy the flake source to the host (bounded timeout, retried with
   exponential backoff while it keeps timing out);
2. open a session and build the system on the host;
3. optionally run the preflight checks (host health, then the new system's
   own self-check);
4. optionally test-activate the new system;
5. commit it with the three-step boot protocol in :func:`boot_config`.

Every failure is reported as a :class:`StageError` naming the destination and
the stage, chained to the underlying cause.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import AbstractAsyncContextManager, contextmanager
from dataclasses import dataclass, field
from functools import partial

from .config import AppConfig, CopyConfig, StageBehavior
from .destination import Destination
from .errors import CopyTimeout, DeployFlakeError, StageError
from .logging import LogRouter
from .providers import BuiltConfiguration, DeployState, OperatingSystem
from .runner import CommandRunner
from .source import Flake

Connector = Callable[[Destination], AbstractAsyncContextManager[OperatingSystem]]
Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff between attempts, bounded by a total time budget."""

    initial_interval: float = 0.5
    multiplier: float = 1.5
    max_interval: float = 60.0
    max_elapsed: float = 900.0
    jitter: float = 0.5

    @classmethod
    def from_config(cls, config: CopyConfig) -> RetryPolicy:
        """Build a policy from the ``copy`` configuration section."""
        return cls(
            initial_interval=config.initial_interval,
            multiplier=config.multiplier,
            max_interval=config.max_interval,
            max_elapsed=config.max_elapsed,
            jitter=config.jitter,
        )

    def delays(self, rng: random.Random | None = None) -> Iterator[float]:
        """Yield successive wait intervals, randomised by ``jitter``."""
        source = rng or random.Random()
        interval = self.initial_interval
        while True:
            if self.jitter:
                spread = interval * self.jitter
                yield source.uniform(interval - spread, interval + spread)
            else:
                yield interval
            interval = min(interval * self.multiplier, self.max_interval)


@dataclass(frozen=True)
class PipelineOptions:
    """Knobs that shape a deployment run."""

    preflight: StageBehavior = StageBehavior.RUN
    test: StageBehavior = StageBehavior.RUN
    preflight_script: str | None = None
    build_args: tuple[str, ...] = ()
    copy_timeout: float = 30.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    nix_bin: str = "nix"
    ssh_options: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: AppConfig) -> PipelineOptions:
        """Derive pipeline options from the resolved application config."""
        return cls(
            preflight=config.stages.preflight,
            test=config.stages.test,
            preflight_script=config.preflight_script,
            build_args=config.build_args,
            copy_timeout=config.copy.timeout,
            retry=RetryPolicy.from_config(config.copy),
            nix_bin=config.nix_bin,
            ssh_options=config.ssh.options,
        )


@dataclass
class DeployOutcome:
    """Terminal result of one destination's pipeline."""

    destination: Destination
    state: DeployState = DeployState.DISCONNECTED
    error: BaseException | None = None
    duration: float = 0.0
    built: BuiltConfiguration | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when the destination committed its new boot entry."""
        return self.error is None and self.state is DeployState.BOOT_COMMITTED


@contextmanager
def stage_errors(destination: str, stage: str, guidance: str | None = None) -> Iterator[None]:
    """Re-raise deployment errors raised in the block as a :class:`StageError`."""
    try:
        yield
    except StageError:
        raise
    except DeployFlakeError as exc:
        message = f"{guidance}: {exc}" if guidance else str(exc)
        raise StageError(destination, stage, message) from exc


async def copy_with_retry(
    copy: Callable[[], Awaitable[None]],
    *,
    timeout: float,
    policy: RetryPolicy,
    log: logging.LoggerAdapter | logging.Logger,
    sleep: Sleeper = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """Run *copy* until one attempt finishes within *timeout*.

    Only timeouts are retried; any other failure propagates at once. Returns
    the number of attempts made, and raises :class:`CopyTimeout` once the
    next wait would exceed the policy's elapsed-time budget.
    """
    started = clock()
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            await asyncio.wait_for(copy(), timeout)
        except asyncio.TimeoutError:
            elapsed = clock() - started
            delay = next(delays)
            if elapsed + delay > policy.max_elapsed:
                raise CopyTimeout(
                    f"Copy did not finish within {timeout:g}s after {attempt} attempt(s); "
                    f"giving up after {elapsed:.1f}s."
                ) from None
            log.warning(
                "Copy attempt %d timed out after %gs; retrying in %.1fs",
                attempt,
                timeout,
                delay,
            )
            await sleep(delay)
            continue
        return attempt


async def boot_config(
    system: OperatingSystem,
    built: BuiltConfiguration,
    *,
    label: str | None = None,
) -> None:
    """Make *built* the boot default in three steps.

    A single boot activation cannot tell an invalid configuration apart from
    a stale profile pointer, so a trial activation runs before the profile is
    touched, and the real activation only runs once the profile points at the
    new generation.
    """
    destination = label or system.host
    with stage_errors(
        destination,
        "boot trial",
        "Trial boot activation failed; nothing was committed",
    ):
        await system.update_boot_for_config(built.path)
    with stage_errors(
        destination,
        "set generation",
        "Trial boot activation succeeded but the new generation was not committed; "
        "the system profile may need cleanup",
    ):
        await system.set_as_current_generation(built.path)
    with stage_errors(
        destination,
        "boot commit",
        f"The system profile now points at {built.path}, which is not the boot default; "
        "reset the system profile to the previous generation before retrying",
    ):
        await system.update_boot_for_config(built.path)


@dataclass
class DeploymentPipeline:
    """Drives one destination at a time through every deployment stage."""

    flake: Flake
    options: PipelineOptions
    router: LogRouter
    connect: Connector
    sleep: Sleeper = asyncio.sleep
    clock: Callable[[], float] = time.monotonic

    async def deploy(self, destination: Destination) -> DeployOutcome:
        """Deploy to *destination*; failures are captured in the outcome."""
        outcome = DeployOutcome(destination=destination)
        log = self.router.for_destination(str(destination))
        start = time.perf_counter()
        try:
            await self._deploy(destination, outcome)
        except DeployFlakeError as exc:
            outcome.error = exc
            log.error("Deployment failed: %s", exc)
        except Exception as exc:  # pragma: no cover - defensive catch
            outcome.error = exc
            log.exception("Deployment failed unexpectedly: %s", exc)
        else:
            log.info("Deployed %s", outcome.built.path if outcome.built else "system")
        finally:
            outcome.duration = time.perf_counter() - start
        return outcome

    async def _deploy(self, destination: Destination, outcome: DeployOutcome) -> None:
        label = str(destination)
        log = self.router.for_destination(label)
        options = self.options

        runner = CommandRunner(
            log=log,
            output=self.router.output_for(label),
            host=destination.hostname,
        )
        copy = partial(
            self.flake.copy_closure,
            destination,
            runner,
            nix_bin=options.nix_bin,
            ssh_options=options.ssh_options,
        )
        with stage_errors(label, "copy"):
            attempts = await copy_with_retry(
                copy,
                timeout=options.copy_timeout,
                policy=options.retry,
                log=log,
                sleep=self.sleep,
                clock=self.clock,
            )
        log.debug("Copied flake after %d attempt(s)", attempts)
        outcome.state = DeployState.COPIED

        with stage_errors(label, "connect"):
            async with self.connect(destination) as system:
                outcome.state = DeployState.CONNECTED

                with stage_errors(label, "build"):
                    built = await system.build_flake(
                        self.flake,
                        destination.config_name,
                        options.build_args,
                    )
                outcome.built = built
                outcome.state = DeployState.BUILT

                if options.preflight.enabled:
                    with stage_errors(label, "preflight", "Refusing to deploy"):
                        await system.preflight_check_system()
                        await system.preflight_check_closure(built, options.preflight_script)
                    outcome.state = DeployState.HEALTH_CHECKED
                else:
                    log.info("Skipping preflight checks")

                if options.test.enabled:
                    with stage_errors(label, "test", "Refusing to change the boot entry"):
                        await system.test_config(built.path)
                    outcome.state = DeployState.TESTED
                else:
                    log.info("Skipping test activation")

                await boot_config(system, built, label=label)
                outcome.state = DeployState.BOOT_COMMITTED


__all__ = [
    "DeployOutcome",
    "DeploymentPipeline",
    "PipelineOptions",
    "RetryPolicy",
    "boot_config",
    "copy_with_retry",
    "stage_errors",
]
