"""Ordered fixture runner.

Runs a declared list of dependent steps (create, read, update, patch, search,
validate, delete) against one ResourceClient, carrying the created id and
version tag forward in a FixtureState. A failed step never stops the run;
a step whose required state is missing is skipped without touching the
server.
"""
import logging
import time
from typing import Callable, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from fhir_lifecycle.client import ResourceClient
from fhir_lifecycle.errors import FixtureFileError, PreconditionError, TransportError
from fhir_lifecycle.schemas import FixtureState, OperationResult, RunSummary, StepOutcome, StepStatus

logger = logging.getLogger(__name__)

StepAction = Callable[[ResourceClient, FixtureState], OperationResult]
StepHook = Callable[[OperationResult, FixtureState], None]


class FixtureStep(BaseModel):
    """
    One step of a fixture sequence.

    name: label used in reports.
    action: performs the request and returns its OperationResult.
    expected_status: status codes that count as a pass.
    requires: FixtureState fields that must be set before the step may run.
    extract: copies values from the result into the FixtureState.
    verify: body-level checks; raises AssertionError on mismatch. Only runs
        when the status matched.
    """
    name: str
    action: StepAction
    expected_status: FrozenSet[int] = Field(..., min_length=1)
    requires: Tuple[str, ...] = ()
    extract: Optional[StepHook] = None
    verify: Optional[StepHook] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class RunObserver:
    """Receives runner events. Subclass and override what you need."""

    def run_started(self, name: str, steps: Sequence[FixtureStep]) -> None:
        pass

    def step_finished(self, outcome: StepOutcome) -> None:
        pass

    def run_finished(self, summary: RunSummary) -> None:
        pass


class OrderedFixtureRunner:
    """
    Execute fixture steps strictly in declaration order.

    Each `run()` owns a fresh FixtureState, so separate runs (for example a
    Patient run and a Condition run) can proceed in parallel.

    Example:
        >>> runner = OrderedFixtureRunner("Condition lifecycle", condition_lifecycle())
        >>> summary = runner.run(ResourceClient(base_uri, base_path, "Condition"))
        >>> summary.failed
        0
    """
    def __init__(self, name: str, steps: Iterable[FixtureStep], observers: Iterable[RunObserver] = ()):
        self.name = name
        self.steps: List[FixtureStep] = list(steps)
        self.observers: List[RunObserver] = list(observers)

    def add_observer(self, observer: RunObserver) -> None:
        self.observers.append(observer)

    def run(self, client: ResourceClient) -> RunSummary:
        state = FixtureState()
        summary = RunSummary(name=self.name)
        for observer in self.observers:
            observer.run_started(self.name, self.steps)
        for step in self.steps:
            outcome = self._run_step(step, client, state)
            logger.info("%s: %s -> %s %s", self.name, step.name, outcome.status.value, outcome.message)
            summary.outcomes.append(outcome)
            for observer in self.observers:
                observer.step_finished(outcome)
        for observer in self.observers:
            observer.run_finished(summary)
        return summary

    def _run_step(self, step: FixtureStep, client: ResourceClient, state: FixtureState) -> StepOutcome:
        # 1️⃣ Preconditions: never call the server without the state a step needs
        missing = [field for field in step.requires if not state.has(field)]
        if missing:
            return StepOutcome(
                name=step.name,
                status=StepStatus.SKIPPED,
                message=str(PreconditionError(missing[0], step.name)),
            )

        # 2️⃣ Invoke; transport and file errors become a recorded failure
        started = time.perf_counter()
        try:
            result = step.action(client, state)
        except PreconditionError as exc:
            return StepOutcome(name=step.name, status=StepStatus.SKIPPED, message=str(exc))
        except (TransportError, FixtureFileError) as exc:
            return StepOutcome(
                name=step.name,
                status=StepStatus.FAILED,
                elapsed_millis=(time.perf_counter() - started) * 1000.0,
                message=str(exc),
            )

        # 3️⃣ Status predicate, then body checks
        status = StepStatus.PASSED
        message = ""
        if result.status_code not in step.expected_status:
            status = StepStatus.FAILED
            message = f"Expected status in {sorted(step.expected_status)}, got {result.status_code}"
        elif step.verify is not None:
            try:
                step.verify(result, state)
            except AssertionError as exc:
                status = StepStatus.FAILED
                message = str(exc) or "Response body did not match"
            except Exception as exc:
                # A malformed body fails the step, never the run
                status = StepStatus.FAILED
                message = f"{type(exc).__name__}: {exc}"

        # 4️⃣ Carry state forward for later steps
        if step.extract is not None:
            try:
                step.extract(result, state)
            except Exception as exc:
                logger.warning("%s: extract failed on %s: %r", self.name, step.name, exc)
                if status != StepStatus.FAILED:
                    status = StepStatus.FAILED
                    message = f"{type(exc).__name__}: {exc}"

        return StepOutcome(
            name=step.name,
            status=status,
            status_code=result.status_code,
            elapsed_millis=result.elapsed_millis,
            message=message,
            result=result,
        )
