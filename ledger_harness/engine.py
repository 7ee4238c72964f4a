"""
engine.py - Property-based state-machine testing engine

Drives a system under test (an Executor) with model-valid actions chosen
by hypothesis:

    1. draw an enabled action kind, then one of its valid candidates
    2. execute its Command against the system
    3. apply it to the model
    4. observe the touched state and compare with the prediction

Every hypothesis example starts from genesis on a fresh system from the
executor factory. A ModelMismatch fails the example; hypothesis then
shrinks the failing choice sequence, replaying each candidate on a fresh
system, until nothing smaller still mismatches or the replay budget is
spent.

Determinism: runs are seeded with hypothesis.seed and never touch an
example database, so the same seed and the same system responses give the
same command log and the same shrink result.

Infrastructure errors, cancellation and a generated example that runs out
of valid actions stop the whole run instead of being shrunk.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import hypothesis
from hypothesis import HealthCheck, Phase, Verbosity, reject, strategies as st
from hypothesis.errors import Flaky
from hypothesis.stateful import RuleBasedStateMachine, rule, run_state_machine_as_test

from .cli import ObservationKeys, ObservedState
from .context import RunContext
from .core import ActionSpaceExhausted, Command, CommandRejected, CommandResult, ModelMismatch
from .model import Action, Model, ModelState
from .network import LocalNetwork
from .logs import get_logger

logger = get_logger(__name__)

# Steps per example; longer examples overflow hypothesis's choice buffer.
MAX_STEPS = 500


# ============================================================================
# EXECUTORS
# ============================================================================

class Executor:
    """
    One fresh system under test.

    execute() raises CommandRejected when the system refuses an action;
    any other failure is a harness error and propagates.
    """

    def execute(self, action: Action, command: Command) -> CommandResult:
        raise NotImplementedError

    def observe(self, keys: ObservationKeys) -> ObservedState:
        raise NotImplementedError

    def epoch(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass


ExecutorFactory = Callable[[], Executor]


class NetworkExecutor(Executor):
    """
    Executes actions against one node of a LocalNetwork.

    Transactions are confirmed in a block, and their receipt checked, before
    the post-state is observed. If owned_ctx is given, close() tears that
    context (and its network) down.
    """

    def __init__(self, network: LocalNetwork, node_id: Optional[str] = None,
                 owned_ctx: Optional[RunContext] = None):
        self.network = network
        self.node = network.node(node_id) if node_id else network.leader
        self.owned_ctx = owned_ctx

    def execute(self, action: Action, command: Command) -> CommandResult:
        return self.network.submit(self.node, command)

    def observe(self, keys: ObservationKeys) -> ObservedState:
        return self.network.cli.observe_state(self.node, keys)

    def epoch(self) -> int:
        return self.network.cli.epoch(self.node)

    def close(self) -> None:
        if self.owned_ctx is not None:
            self.owned_ctx.close()


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class StepRecord:
    index: int
    action: str
    command: str
    passed: bool
    detail: str = ""
    example: int = 0


@dataclass
class PropertyRun:
    """
    Outcome of one property run.

    Attributes:
        seed: Seed of the hypothesis run
        steps: Steps asked for per example
        examples: Generated examples executed (shrink replays not included)
        actions: Actions of every generated example, in execution order
        command_log: Rendered command of every action in `actions`
        records: One StepRecord per generated step
        failure: The first ModelMismatch (None if no example failed)
        failing: Action sequence of the first failing example
        shrunk: Minimal failing sequence found by shrinking
        shrunk_failure: The mismatch the shrunk sequence produces
        shrink_attempts: Replays executed after the first failure
        exhausted: Set when a generated example ran out of valid actions
        flaky: True if the minimal example did not fail again on its final replay
    """
    seed: int
    steps: int = 0
    examples: int = 0
    actions: List[Action] = field(default_factory=list)
    command_log: List[str] = field(default_factory=list)
    records: List[StepRecord] = field(default_factory=list)
    failure: Optional[ModelMismatch] = None
    failing: Tuple[Action, ...] = ()
    shrunk: Optional[Tuple[Action, ...]] = None
    shrunk_failure: Optional[ModelMismatch] = None
    shrink_attempts: int = 0
    exhausted: Optional[ActionSpaceExhausted] = None
    flaky: bool = False

    @property
    def passed(self) -> bool:
        return self.failure is None and self.exhausted is None


def merge_keys(first: ObservationKeys, second: ObservationKeys) -> ObservationKeys:
    """Union of two key sets, deterministic order."""
    return ObservationKeys(
        accounts=tuple(sorted(set(first.accounts) | set(second.accounts))),
        bonds=tuple(sorted(set(first.bonds) | set(second.bonds))),
        validator_set=first.validator_set or second.validator_set,
        proposals=tuple(sorted(set(first.proposals) | set(second.proposals))),
    )


class _Abort(BaseException):
    """
    Ends the hypothesis run at once.

    A BaseException so hypothesis neither treats it as a failing example
    nor shrinks it. error is None when the replay budget ran out.
    """

    def __init__(self, error: Optional[BaseException] = None):
        super().__init__(error)
        self.error = error


# ============================================================================
# STATE MACHINE
# ============================================================================

class ActionMachine(RuleBasedStateMachine):
    """
    One hypothesis example: a fresh system driven from genesis.

    The single rule draws an action kind and then one of that kind's valid
    candidates, so every drawn action satisfies its precondition.
    """

    def __init__(self, engine: PropertyEngine, executor: Executor, example: int):
        super().__init__()
        self.engine = engine
        self.executor = executor
        self.example = example
        self.model_state = engine.model.initial
        self.actions: List[Action] = []

    @rule(data=st.data())
    def step(self, data):
        self.engine._step(self, data)

    def teardown(self):
        self.executor.close()


# ============================================================================
# ENGINE
# ============================================================================

class PropertyEngine:
    """
    Seeded state-machine test over one model and a factory of fresh systems.

    Example:
        engine = PropertyEngine(Model(genesis), lambda: SimulatedExecutor(genesis), seed=42, steps=200)
        run = engine.run()
        assert run.passed, run.failure
    """

    def __init__(
        self,
        model: Model,
        executor_factory: ExecutorFactory,
        seed: int = 0,
        steps: int = 100,
        examples: int = 2,
        max_shrink_attempts: int = 500,
        full_check_every: int = 25,
        ctx: Optional[RunContext] = None,
    ):
        if not 1 <= steps <= MAX_STEPS:
            raise ValueError(f"steps must be between 1 and {MAX_STEPS}")
        if examples < 1:
            raise ValueError("examples must be at least 1")
        self.model = model
        self.executor_factory = executor_factory
        self.seed = seed
        self.steps = steps
        self.examples = examples
        self.max_shrink_attempts = max_shrink_attempts
        self.full_check_every = max(1, full_check_every)
        self.ctx = ctx
        self.log = (ctx.log if ctx is not None else logger).bind(component="engine", seed=seed)
        self._result = PropertyRun(seed=seed, steps=steps)
        self._failures: List[Tuple[Tuple[Action, ...], ModelMismatch]] = []

    def settings(self) -> hypothesis.settings:
        # The first generated example is always hypothesis's simplest one;
        # only the later examples depend on the seed.
        return hypothesis.settings(
            max_examples=self.examples,
            stateful_step_count=self.steps,
            database=None,
            derandomize=True,
            deadline=None,
            phases=(Phase.generate, Phase.shrink),
            report_multiple_bugs=False,
            suppress_health_check=list(HealthCheck),
            verbosity=Verbosity.quiet,
            print_blob=False,
        )

    def run(self) -> PropertyRun:
        """
        Generate and execute examples; on a mismatch, shrink it.

        Raises:
            ScenarioCancelled: If the run context was cancelled
            HarnessError: Infrastructure failures of the system under test
        """
        result = self._result = PropertyRun(seed=self.seed, steps=self.steps)
        self._failures = []

        @hypothesis.seed(self.seed)
        def new_machine() -> ActionMachine:
            executor = self._new_executor()
            return ActionMachine(self, executor, result.examples - 1)

        try:
            # Every example runs the full step count unless it fails first.
            run_state_machine_as_test(new_machine, settings=self.settings(), _min_steps=self.steps)
        except _Abort as abort:
            if isinstance(abort.error, ActionSpaceExhausted):
                result.exhausted = abort.error
            elif abort.error is not None:
                raise abort.error from None
        except (ModelMismatch, Flaky) as exc:
            if not self._failures:
                raise
            result.flaky = isinstance(exc, Flaky)

        if self._failures:
            result.shrunk, result.shrunk_failure = self._minimal_failure()
            self.log.warning("property_failed", step=result.failure.step, examples=result.examples,
                             shrunk_length=len(result.shrunk), attempts=result.shrink_attempts,
                             flaky=result.flaky)
        elif result.exhausted is not None:
            self.log.warning("property_exhausted", step=result.exhausted.step, steps=self.steps,
                             examples=result.examples)
        else:
            self.log.info("property_passed", steps=self.steps, examples=result.examples)
        return result

    def _new_executor(self) -> Executor:
        result = self._result
        if self._failures:
            if result.shrink_attempts >= self.max_shrink_attempts:
                raise _Abort()
            result.shrink_attempts += 1
        else:
            result.examples += 1
        try:
            self._check_cancelled()
            return self.executor_factory()
        except Exception as exc:
            raise _Abort(exc) from exc

    def _minimal_failure(self) -> Tuple[Tuple[Action, ...], ModelMismatch]:
        # Shortest failing sequence; among equals, the latest (hypothesis's final replay).
        shortest = min(len(actions) for actions, _ in self._failures)
        return [f for f in self._failures if len(f[0]) == shortest][-1]

    @property
    def _generating(self) -> bool:
        return not self._failures

    def _full_check(self, index: int) -> bool:
        return (index + 1) % self.full_check_every == 0 or index == self.steps - 1

    def _check_cancelled(self) -> None:
        if self.ctx is not None:
            self.ctx.check_cancelled()

    # ========================================================================
    # STEPS
    # ========================================================================

    def _step(self, machine: ActionMachine, data: st.DataObject) -> None:
        index = len(machine.actions)
        try:
            self._check_cancelled()
            state = machine.model_state
            if self.model.uses_epoch:
                state = state.at_epoch(machine.executor.epoch())
            groups = self.model.candidates_by_kind(state)
        except Exception as exc:
            raise _Abort(exc) from exc
        if not groups:
            self._exhausted(index)

        kind = data.draw(st.sampled_from(list(groups)), label="kind")
        action = data.draw(st.sampled_from(groups[kind]), label="action")
        command = action.to_command()
        machine.actions.append(action)
        if self._generating:
            self._result.actions.append(action)
            self._result.command_log.append(command.render())

        try:
            machine.model_state = self.check_step(
                machine.executor, state, index, action, command, self._full_check(index))
        except ModelMismatch as exc:
            self._record_failure(machine, command, exc)
            raise
        except Exception as exc:
            raise _Abort(exc) from exc
        if self._generating:
            self._result.records.append(
                StepRecord(index, action.describe(), command.render(), True, example=machine.example))

    def _exhausted(self, index: int) -> None:
        if self._generating:
            raise _Abort(ActionSpaceExhausted(index, self.steps))
        # A shrink candidate that runs dry is not a smaller failure.
        reject()

    def _record_failure(self, machine: ActionMachine, command: Command, exc: ModelMismatch) -> None:
        if self._generating:
            result = self._result
            result.records.append(StepRecord(exc.step, exc.action.describe(), command.render(), False,
                                             str(exc), example=machine.example))
            result.failure = exc
            result.failing = tuple(machine.actions)
            self.log.warning("model_mismatch", step=exc.step, example=machine.example,
                             action=exc.action.describe(), discrepancies=len(exc.discrepancies))
        else:
            self.log.debug("shrink_step", length=len(machine.actions), attempts=self._result.shrink_attempts)
        self._failures.append((tuple(machine.actions), exc))

    def check_step(
        self,
        executor: Executor,
        state: ModelState,
        index: int,
        action: Action,
        command: Command,
        full_check: bool,
    ) -> ModelState:
        """
        Execute one action and compare the observed post-state with the prediction.

        Returns:
            The predicted post-state

        Raises:
            ModelMismatch: If the system rejected the action or its state
                differs from the prediction
        """
        try:
            executor.execute(action, command)
        except CommandRejected as exc:
            raise ModelMismatch(index, action, [{
                "field": "outcome", "key": action.kind,
                "expected": "applied", "actual": exc.result.summary(),
            }]) from exc
        predicted = self.model.apply(state, action)
        keys = action.keys(state)
        if full_check:
            keys = merge_keys(keys, predicted.all_keys())
        observed = executor.observe(keys)
        discrepancies = self.model.diff(observed, predicted)
        if discrepancies:
            raise ModelMismatch(index, action, discrepancies)
        return predicted
