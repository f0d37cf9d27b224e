"""Deploy to many destinations concurrently."""
from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass

from .destination import Destination
from .pipeline import DeploymentPipeline, DeployOutcome


@dataclass(frozen=True)
class FanoutReport:
    """Outcomes of every destination, in the order they were requested."""

    outcomes: tuple[DeployOutcome, ...]
    first_failure: DeployOutcome | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when every destination committed its boot entry."""
        return self.first_failure is None and all(outcome.ok for outcome in self.outcomes)

    @property
    def failures(self) -> list[DeployOutcome]:
        """Return the outcomes that did not succeed."""
        return [outcome for outcome in self.outcomes if not outcome.ok]


async def deploy_all(
    destinations: Sequence[Destination],
    pipeline: DeploymentPipeline,
    *,
    max_concurrency: int = 0,
) -> FanoutReport:
    """Run one pipeline per destination and wait for all of them.

    A failing destination never cancels its siblings: every pipeline runs to
    its own success or failure. ``first_failure`` is the failure that
    finished first.
    """
    if not destinations:
        return FanoutReport(outcomes=())

    semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency > 0 else None

    async def _deploy_one(destination: Destination) -> DeployOutcome:
        if semaphore is None:
            return await pipeline.deploy(destination)
        async with semaphore:
            return await pipeline.deploy(destination)

    tasks = [
        asyncio.create_task(_deploy_one(destination), name=f"deploy {destination}")
        for destination in destinations
    ]

    first_failure: DeployOutcome | None = None
    pending: set[asyncio.Task[DeployOutcome]] = set(tasks)
    while pending:
        done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
        for task in sorted(done, key=tasks.index):
            outcome = task.result()
            if first_failure is None and not outcome.ok:
                first_failure = outcome

    return FanoutReport(
        outcomes=tuple(task.result() for task in tasks),
        first_failure=first_failure,
    )


__all__ = ["FanoutReport", "deploy_all"]
