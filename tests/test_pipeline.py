"""Tests for the per-destination deployment pipeline."""
from __future__ import annotations

import asyncio
import logging
import random
from itertools import islice
from pathlib import Path

import pytest

from deploy_flake.config import StageBehavior, load_config
from deploy_flake.destination import Destination, Flavor
from deploy_flake.errors import CommandError, CopyTimeout, DeployFlakeError, SessionError, StageError
from deploy_flake.logging import LogRouter
from deploy_flake.pipeline import (
    DeploymentPipeline,
    PipelineOptions,
    RetryPolicy,
    boot_config,
    copy_with_retry,
    stage_errors,
)
from deploy_flake.providers import BuiltConfiguration, DeployState
from deploy_flake.providers.nixos import NixosError
from tests.fakes import BUILT_PATH, FakeFlake, FakeSystem, make_connector

LOG = logging.getLogger("pipeline_tests")
ALPHA = Destination(Flavor.NIXOS, "alpha")
FULL_RUN = [
    "build",
    "preflight_system",
    "preflight_closure",
    "test",
    "boot",
    "set_generation",
    "boot",
]


class FakeClock:
    """Monotonic clock that only advances when the pipeline sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


async def _hang() -> None:
    await asyncio.Event().wait()


def _pipeline(
    router: LogRouter,
    systems: dict[str, FakeSystem],
    *,
    flake: FakeFlake | None = None,
    clock: FakeClock | None = None,
    connect_errors: dict[str, DeployFlakeError] | None = None,
    **options: object,
) -> DeploymentPipeline:
    clock = clock or FakeClock()
    return DeploymentPipeline(
        flake=flake or FakeFlake(),  # type: ignore[arg-type]
        options=PipelineOptions(**options),  # type: ignore[arg-type]
        router=router,
        connect=make_connector(systems, connect_errors=connect_errors),  # type: ignore[arg-type]
        sleep=clock.sleep,
        clock=clock,
    )


# ----------------------------------------------------------------------
# Retry policy and copy retries
# ----------------------------------------------------------------------


def test_retry_policy_delays_grow_to_cap() -> None:
    """Intervals grow by the multiplier and stop at the cap."""
    policy = RetryPolicy(initial_interval=0.5, multiplier=1.5, max_interval=1.0, jitter=0.0)

    assert list(islice(policy.delays(), 5)) == [0.5, 0.75, 1.0, 1.0, 1.0]


def test_retry_policy_jitter_stays_in_range() -> None:
    """Jittered intervals stay within the configured spread."""
    policy = RetryPolicy(initial_interval=2.0, multiplier=1.0, jitter=0.5)

    for delay in islice(policy.delays(random.Random(7)), 20):
        assert 1.0 <= delay <= 3.0


def test_copy_with_retry_first_attempt_succeeds() -> None:
    """A prompt copy neither retries nor sleeps."""
    clock = FakeClock()
    calls: list[int] = []

    async def copy() -> None:
        calls.append(1)

    attempts = asyncio.run(
        copy_with_retry(
            copy,
            timeout=1.0,
            policy=RetryPolicy(),
            log=LOG,
            sleep=clock.sleep,
            clock=clock,
        )
    )

    assert attempts == 1
    assert calls == [1]
    assert clock.sleeps == []


def test_copy_with_retry_retries_after_timeout() -> None:
    """A hung attempt is abandoned and the copy is tried again."""
    clock = FakeClock()
    calls: list[int] = []

    async def copy() -> None:
        calls.append(1)
        if len(calls) == 1:
            await _hang()

    attempts = asyncio.run(
        copy_with_retry(
            copy,
            timeout=0.01,
            policy=RetryPolicy(initial_interval=1.0, jitter=0.0),
            log=LOG,
            sleep=clock.sleep,
            clock=clock,
        )
    )

    assert attempts == 2
    assert clock.sleeps == [1.0]


@pytest.mark.mutation_timeout
def test_copy_with_retry_gives_up_after_budget() -> None:
    """Retries stop once the next wait would exceed the elapsed-time budget."""
    clock = FakeClock()
    policy = RetryPolicy(
        initial_interval=1.0,
        multiplier=2.0,
        max_interval=60.0,
        max_elapsed=10.0,
        jitter=0.0,
    )

    with pytest.raises(CopyTimeout, match="after 4 attempt"):
        asyncio.run(
            copy_with_retry(
                _hang,
                timeout=0.01,
                policy=policy,
                log=LOG,
                sleep=clock.sleep,
                clock=clock,
            )
        )

    assert clock.sleeps == [1.0, 2.0, 4.0]


def test_copy_with_retry_does_not_retry_hard_failures() -> None:
    """Errors other than timeouts propagate at once."""
    clock = FakeClock()
    calls: list[int] = []

    async def copy() -> None:
        calls.append(1)
        raise CommandError(["nix", "copy"], 1, host="alpha")

    with pytest.raises(CommandError):
        asyncio.run(
            copy_with_retry(
                copy,
                timeout=1.0,
                policy=RetryPolicy(),
                log=LOG,
                sleep=clock.sleep,
                clock=clock,
            )
        )

    assert calls == [1]
    assert clock.sleeps == []


# ----------------------------------------------------------------------
# Stage error wrapping
# ----------------------------------------------------------------------


def test_stage_errors_wraps_with_guidance() -> None:
    """Deployment errors gain the destination, stage and guidance."""
    cause = NixosError("systemctl failed")

    with pytest.raises(StageError) as excinfo:
        with stage_errors("alpha", "preflight", "Refusing to deploy"):
            raise cause

    assert str(excinfo.value) == "alpha: preflight: Refusing to deploy: systemctl failed"
    assert excinfo.value.__cause__ is cause


def test_stage_errors_keeps_inner_stage() -> None:
    """An inner stage error is not re-labelled by an outer stage."""
    inner = StageError("alpha", "build", "boom")

    with pytest.raises(StageError) as excinfo:
        with stage_errors("alpha", "connect"):
            raise inner

    assert excinfo.value is inner


def test_stage_errors_ignores_foreign_exceptions() -> None:
    """Programming errors are not disguised as stage failures."""
    with pytest.raises(KeyError):
        with stage_errors("alpha", "build"):
            raise KeyError("x")


# ----------------------------------------------------------------------
# Boot commit protocol
# ----------------------------------------------------------------------


def _built(system: FakeSystem) -> BuiltConfiguration:
    return BuiltConfiguration(path=BUILT_PATH, system_name="alpha", system=system)


def test_boot_config_order() -> None:
    """Trial boot, profile update, then the real boot activation."""
    system = FakeSystem()

    asyncio.run(boot_config(system, _built(system)))  # type: ignore[arg-type]

    assert system.calls == ["boot", "set_generation", "boot"]


@pytest.mark.parametrize(
    ("failing_call", "stage", "hint"),
    [
        (1, "boot trial", "nothing was committed"),
        (2, "set generation", "may need cleanup"),
        (3, "boot commit", "reset the system profile"),
    ],
)
def test_boot_config_failures_explain_host_state(
    failing_call: int,
    stage: str,
    hint: str,
) -> None:
    """Each step's failure tells the operator what state the host is in."""
    system = FakeSystem(fail_on_call={failing_call: NixosError("exit status 1")})

    with pytest.raises(StageError) as excinfo:
        asyncio.run(boot_config(system, _built(system), label="alpha"))  # type: ignore[arg-type]

    assert excinfo.value.stage == stage
    assert excinfo.value.destination == "alpha"
    assert hint in str(excinfo.value)
    assert len(system.calls) == failing_call


# ----------------------------------------------------------------------
# Full pipeline
# ----------------------------------------------------------------------


def test_pipeline_runs_every_stage(router: LogRouter) -> None:
    """A healthy destination goes from copy to a committed boot entry."""
    system = FakeSystem()
    flake = FakeFlake()
    pipeline = _pipeline(router, {"alpha": system}, flake=flake)

    outcome = asyncio.run(pipeline.deploy(ALPHA))

    assert outcome.ok
    assert outcome.error is None
    assert outcome.state is DeployState.BOOT_COMMITTED
    assert outcome.built is not None and outcome.built.path == BUILT_PATH
    assert outcome.duration >= 0
    assert flake.copies == ["alpha"]
    assert system.calls == FULL_RUN


def test_pipeline_uses_configuration_name(router: LogRouter) -> None:
    """The destination's configuration name selects the system to build."""
    system = FakeSystem()
    pipeline = _pipeline(router, {"alpha": system})

    outcome = asyncio.run(
        pipeline.deploy(Destination(Flavor.NIXOS, "alpha", config_name="web"))
    )

    assert outcome.built is not None
    assert outcome.built.system_name == "web"


@pytest.mark.parametrize(
    ("options", "expected"),
    [
        ({"preflight": StageBehavior.SKIP}, ["build", "test", "boot", "set_generation", "boot"]),
        (
            {"test": StageBehavior.SKIP},
            ["build", "preflight_system", "preflight_closure", "boot", "set_generation", "boot"],
        ),
        (
            {"preflight": StageBehavior.SKIP, "test": StageBehavior.SKIP},
            ["build", "boot", "set_generation", "boot"],
        ),
    ],
)
def test_pipeline_skips_optional_stages(
    router: LogRouter,
    options: dict[str, object],
    expected: list[str],
) -> None:
    """Skipped stages are left out while boot still commits."""
    system = FakeSystem()
    pipeline = _pipeline(router, {"alpha": system}, **options)

    outcome = asyncio.run(pipeline.deploy(ALPHA))

    assert outcome.ok
    assert system.calls == expected


@pytest.mark.parametrize(
    ("failing_verb", "stage", "state"),
    [
        ("build", "build", DeployState.CONNECTED),
        ("preflight_system", "preflight", DeployState.BUILT),
        ("preflight_closure", "preflight", DeployState.BUILT),
        ("test", "test", DeployState.HEALTH_CHECKED),
    ],
)
def test_pipeline_stops_before_boot_on_failure(
    router: LogRouter,
    failing_verb: str,
    stage: str,
    state: DeployState,
) -> None:
    """A failed check never reaches the boot entry."""
    system = FakeSystem(failures={failing_verb: NixosError("nope")})
    pipeline = _pipeline(router, {"alpha": system})

    outcome = asyncio.run(pipeline.deploy(ALPHA))

    assert not outcome.ok
    assert isinstance(outcome.error, StageError)
    assert outcome.error.stage == stage
    assert outcome.error.destination == "alpha"
    assert outcome.state is state
    assert "boot" not in system.calls
    assert "set_generation" not in system.calls


def test_pipeline_copy_failure(router: LogRouter) -> None:
    """A failed copy stops before any session is opened."""
    system = FakeSystem()
    flake = FakeFlake(copy_error=CommandError(["nix", "copy"], 1, host="alpha"))
    pipeline = _pipeline(router, {"alpha": system}, flake=flake)

    outcome = asyncio.run(pipeline.deploy(ALPHA))

    assert isinstance(outcome.error, StageError)
    assert outcome.error.stage == "copy"
    assert outcome.state is DeployState.DISCONNECTED
    assert system.calls == []


def test_pipeline_copy_timeout(router: LogRouter) -> None:
    """A copy that never finishes within the budget fails the destination."""

    class HangingFlake(FakeFlake):
        async def copy_closure(self, destination: Destination, runner: object, **_: object) -> None:
            await _hang()

    pipeline = _pipeline(
        router,
        {"alpha": FakeSystem()},
        flake=HangingFlake(),
        copy_timeout=0.01,
        retry=RetryPolicy(initial_interval=1.0, max_elapsed=0.5, jitter=0.0),
    )

    outcome = asyncio.run(pipeline.deploy(ALPHA))

    assert isinstance(outcome.error, StageError)
    assert outcome.error.stage == "copy"
    assert isinstance(outcome.error.__cause__, CopyTimeout)


def test_pipeline_connect_failure(router: LogRouter) -> None:
    """An unreachable host fails after the copy, before any verb runs."""
    system = FakeSystem()
    pipeline = _pipeline(
        router,
        {"alpha": system},
        connect_errors={"alpha": SessionError("Could not connect to alpha")},
    )

    outcome = asyncio.run(pipeline.deploy(ALPHA))

    assert isinstance(outcome.error, StageError)
    assert outcome.error.stage == "connect"
    assert outcome.state is DeployState.COPIED
    assert system.calls == []


def test_pipeline_boot_failure_keeps_tested_state(router: LogRouter) -> None:
    """A failed boot commit leaves the outcome at the last completed state."""
    system = FakeSystem(fail_on_call={6: NixosError("profile locked")})
    pipeline = _pipeline(router, {"alpha": system})

    outcome = asyncio.run(pipeline.deploy(ALPHA))

    assert isinstance(outcome.error, StageError)
    assert outcome.error.stage == "set generation"
    assert outcome.state is DeployState.TESTED


def test_pipeline_captures_unexpected_errors(router: LogRouter) -> None:
    """Unexpected exceptions are recorded on the outcome instead of escaping."""
    system = FakeSystem(failures={"build": RuntimeError("bug")})
    pipeline = _pipeline(router, {"alpha": system})

    outcome = asyncio.run(pipeline.deploy(ALPHA))

    assert isinstance(outcome.error, RuntimeError)
    assert not outcome.ok


def test_pipeline_options_from_config(tmp_path: Path) -> None:
    """Options mirror the resolved configuration."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "stages": {"test": "skip"},
            "build_args": ["--impure"],
            "preflight_script": "bin/check",
            "copy": {"timeout": "1m", "jitter": 0},
            "ssh": {"options": ["Compression=yes"]},
        },
    )

    options = PipelineOptions.from_config(config)

    assert options.test is StageBehavior.SKIP
    assert options.preflight is StageBehavior.RUN
    assert options.build_args == ("--impure",)
    assert options.preflight_script == "bin/check"
    assert options.copy_timeout == 60.0
    assert options.retry.jitter == 0.0
    assert options.ssh_options == ("Compression=yes",)
