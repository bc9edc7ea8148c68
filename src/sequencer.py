"""Dependency-ordered application of deployment stages.

Stages are declared with explicit prerequisites. The sequencer submits them
in topological order (declaration order breaks ties), gates each one on all
of its prerequisites having reached Ready, and blocks on the stage's
readiness probe before moving on. A probe timeout is terminal: the run
aborts and later stages stay Pending.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from common import (
    STATUS_FAILED,
    STATUS_OK,
    STATUS_SKIPPED,
    STATUS_WARNING,
    DeployError,
    StepResult,
)
from readiness import Probe, wait_until_ready

logger = logging.getLogger(__name__)

PENDING = 'pending'
SUBMITTED = 'submitted'
READY = 'ready'
FAILED = 'failed'
SKIPPED = 'skipped'


class DependencyError(DeployError):
    """Stage graph is malformed (unknown prerequisite or cycle)."""


class StageFailedError(DeployError):
    """A stage failed; the run was aborted.

    Attributes:
        stage: Name of the failed stage
    """

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"Stage '{stage}' failed: {message}")


@dataclass
class Stage:
    """One step of the fixed topology.

    Attributes:
        name: Stage identifier
        description: Shown in logs and the dry-run plan
        submit: Applies the stage's resources (must be re-submittable)
        probe: Readiness probe; None means ready on submit
        requires: Names of stages that must be Ready first
        timeout: Readiness bound in seconds
        interval: Poll interval in seconds
        enabled: False skips the stage (e.g. backend-specific stages)
        finalize: Runs after Ready; returns a warning message or None
    """
    name: str
    description: str
    submit: Callable[[], None]
    probe: Optional[Callable[[], Probe]] = None
    requires: tuple[str, ...] = ()
    timeout: float = 120
    interval: float = 10
    enabled: bool = True
    finalize: Optional[Callable[[], Optional[str]]] = None


@dataclass
class StageState:
    stage: Stage
    status: str = PENDING
    message: str = ''
    duration: float = 0.0


def order_stages(stages: list[Stage]) -> list[Stage]:
    """Topologically sort stages, keeping declaration order among peers.

    Raises:
        DependencyError: On duplicate names, unknown prerequisites or cycles
    """
    by_name: dict[str, Stage] = {}
    for stage in stages:
        if stage.name in by_name:
            raise DependencyError(f"Duplicate stage name: {stage.name}")
        by_name[stage.name] = stage

    indegree = {s.name: 0 for s in stages}
    dependents: dict[str, list[str]] = {s.name: [] for s in stages}
    for stage in stages:
        for dep in stage.requires:
            if dep not in by_name:
                raise DependencyError(f"Stage '{stage.name}' requires unknown stage '{dep}'")
            indegree[stage.name] += 1
            dependents[dep].append(stage.name)

    position = {s.name: i for i, s in enumerate(stages)}
    available = [s.name for s in stages if indegree[s.name] == 0]
    ordered: list[Stage] = []
    while available:
        name = min(available, key=position.get)
        available.remove(name)
        ordered.append(by_name[name])
        for child in dependents[name]:
            indegree[child] -= 1
            if indegree[child] == 0:
                available.append(child)

    if len(ordered) != len(stages):
        stuck = sorted(n for n, d in indegree.items() if d > 0)
        raise DependencyError(f"Dependency cycle among stages: {', '.join(stuck)}")
    return ordered


class DeploymentSequencer:
    """Applies stages in dependency order, blocking on readiness."""

    def __init__(
        self,
        stages: list[Stage],
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.stages = order_stages(stages)
        self.states = {s.name: StageState(s) for s in self.stages}
        self.clock = clock
        self.sleep = sleep
        self.results: list[StepResult] = []

    def _dependencies_satisfied(self, stage: Stage) -> bool:
        return all(self.states[dep].status in (READY, SKIPPED) for dep in stage.requires)

    def _record(self, state: StageState, result_status: str) -> None:
        self.results.append(StepResult(state.stage.name, result_status, state.message, state.duration))

    def apply(self) -> list[StepResult]:
        """Run every stage.

        Raises:
            StageFailedError: When a stage's submission or readiness fails
        """
        for stage in self.stages:
            state = self.states[stage.name]

            if not stage.enabled:
                state.status = SKIPPED
                state.message = 'not enabled for this configuration'
                logger.info(f"[{stage.name}] Skipped ({state.message})")
                self._record(state, STATUS_SKIPPED)
                continue

            if not self._dependencies_satisfied(stage):
                blocked = [d for d in stage.requires if self.states[d].status not in (READY, SKIPPED)]
                state.status = FAILED
                state.message = f"prerequisites not ready: {', '.join(blocked)}"
                self._record(state, STATUS_FAILED)
                raise StageFailedError(stage.name, state.message)

            self._run_stage(state)
        return self.results

    def _run_stage(self, state: StageState) -> None:
        stage = state.stage
        start = self.clock()
        logger.info(f"[{stage.name}] {stage.description}")
        try:
            stage.submit()
            state.status = SUBMITTED
            if stage.probe is not None:
                observed = wait_until_ready(
                    stage.probe(), stage.interval, stage.timeout,
                    description=stage.name, clock=self.clock, sleep=self.sleep,
                )
                state.message = str(observed)
            state.status = READY
        except DeployError as e:
            state.status = FAILED
            state.message = str(e)
            state.duration = self.clock() - start
            logger.error(f"[{stage.name}] {e}")
            self._record(state, STATUS_FAILED)
            raise StageFailedError(stage.name, str(e)) from e

        warning = stage.finalize() if stage.finalize else None
        state.duration = self.clock() - start
        if warning:
            state.message = warning
            logger.warning(f"[{stage.name}] {warning}")
            self._record(state, STATUS_WARNING)
        else:
            logger.info(f"[{stage.name}] Ready")
            self._record(state, STATUS_OK)

    def preview(self) -> list[Stage]:
        """Print the ordered plan without submitting anything."""
        print("")
        print("═══════════════════════════════════════════════════════════════")
        print("  DRY-RUN: deploy apply")
        print("═══════════════════════════════════════════════════════════════")
        print("")
        print("Stages to apply:")
        run_count = 0
        skip_count = 0
        for stage in self.stages:
            if stage.enabled:
                print(f"  [ OK ] {stage.name}: {stage.description}")
                if stage.requires:
                    print(f"         Requires: {', '.join(stage.requires)}")
                if stage.probe is not None:
                    print(f"         Timeout: {stage.timeout}s (every {stage.interval}s)")
                run_count += 1
            else:
                print(f"  [SKIP] {stage.name}: {stage.description}")
                skip_count += 1
            print("")
        print("═══════════════════════════════════════════════════════════════")
        print(f"  Summary: {run_count} stages to apply, {skip_count} to skip")
        print("  Mode: DRY-RUN (no changes made)")
        print("═══════════════════════════════════════════════════════════════")
        print("")
        print("Remove --dry-run to apply the deployment.")
        print("")
        return list(self.stages)

    @property
    def statuses(self) -> dict[str, str]:
        return {name: state.status for name, state in self.states.items()}

