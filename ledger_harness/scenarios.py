"""
scenarios.py - Scenario Registry

Named end-to-end scenarios composed from the Topology Builder, Process
Supervisor, Chain Sync Monitor, CLI Driver and State-Machine Model.

Two flavours:
    - directed scenarios: fixed command sequences checked against the model
    - property scenarios: seeded random action sequences (see engine.py)

Every run owns a RunContext. Processes, ports and directories are released
on every exit path (success, error, cancellation, timeout). ModelMismatch
turns into a failed ScenarioResult; every other error is re-raised after
teardown.

Usage:
    from ledger_harness import scenarios

    @scenarios.register("my_transfer")
    def my_transfer(s, amount=5):
        s.start_network(2)
        s.apply(Transfer("albert", "bertha", Decimal(amount)))

    result = scenarios.run("my_transfer", settings, amount=7)
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from . import cli as commands
from .cli import ObservationKeys
from .config import HarnessSettings, load_settings
from .context import RunContext
from .core import (
    ActionSpaceExhausted, Command, CommandRejected, CommandResult, Expect, ModelMismatch, Role,
    ScenarioNotFound, to_amount,
)
from .engine import ExecutorFactory, NetworkExecutor, PropertyEngine, PropertyRun, StepRecord
from .logs import configure_logging, is_configured
from .model import (
    DEFAULT_KINDS, TRANSITIONS, Action, Model, ModelState, PreconditionFailed, SubmitProposal, Transfer,
    Bond, Unbond, VoteProposal, Withdraw,
)
from .network import LocalNetwork
from .supervisor import RunningNode
from .sync import EpochAtLeast
from .wasm import VP_ALWAYS_FALSE

ScenarioFn = Callable[..., None]


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class ScenarioResult:
    """
    Outcome of one scenario run.

    Attributes:
        name: Scenario name
        run_id: Run id of the RunContext
        seed: Seed handed to the scenario
        passed: True if the scenario completed without error or mismatch
        steps: Per-step records
        command_log: Rendered commands in execution order
        error: Error message of a failed run
        mismatch: The ModelMismatch of a failed run
        shrunk: Minimal failing action sequence (property scenarios)
        exhausted: True if a property run ran out of valid actions early
        duration: Wall-clock seconds
        run_dir: Run directory (retained on failure when configured)
    """
    name: str
    run_id: str
    seed: int
    passed: bool = False
    steps: List[StepRecord] = field(default_factory=list)
    command_log: List[str] = field(default_factory=list)
    error: Optional[str] = None
    mismatch: Optional[ModelMismatch] = None
    shrunk: Optional[List[str]] = None
    exhausted: bool = False
    duration: float = 0.0
    run_dir: Optional[str] = None

    def summary(self) -> str:
        status = "PASSED" if self.passed else "FAILED"
        text = f"{self.name} [{self.run_id}] {status}: {len(self.steps)} steps in {self.duration:.2f}s"
        if self.error:
            text += f"\n  error: {self.error}"
        if self.shrunk:
            text += "\n  minimal reproducer:\n" + "\n".join(f"    {i}: {c}" for i, c in enumerate(self.shrunk))
        return text


# ============================================================================
# SCENARIO FACADE
# ============================================================================

class Scenario:
    """
    Handle passed to scenario functions.

    Holds the run context, the network once started, the reference model
    and its current state, and records every step into the result.
    """

    def __init__(self, ctx: RunContext, result: ScenarioResult, seed: int = 0):
        self.ctx = ctx
        self.result = result
        self.seed = seed
        self.network: Optional[LocalNetwork] = None
        self.model: Optional[Model] = None
        self.state: Optional[ModelState] = None
        self._network_args: Dict[str, Any] = {}
        self.log = ctx.log.bind(scenario=result.name)

    @property
    def settings(self) -> HarnessSettings:
        return self.ctx.settings

    @property
    def cli(self):
        return self._require_network().cli

    @property
    def sync(self):
        return self._require_network().sync

    def _require_network(self) -> LocalNetwork:
        if self.network is None:
            raise RuntimeError("start_network() has not been called")
        return self.network

    def start_network(
        self,
        node_count: int = 1,
        roles: Optional[Sequence[Role]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        validators: int = 1,
        ready_height: int = 1,
    ) -> LocalNetwork:
        """Start the scenario's network and reset the model to its genesis."""
        self._network_args = dict(node_count=node_count, roles=roles, overrides=overrides,
                                  validators=validators, ready_height=ready_height)
        self.network = LocalNetwork.start(self.ctx, **self._network_args)
        self.model = Model(self.network.config.genesis, kinds=tuple(TRANSITIONS))
        self.state = self.model.initial
        self.record(f"network started: {node_count} nodes, chain {self.network.config.genesis.chain_id}")
        return self.network

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def record(self, description: str, passed: bool = True, detail: str = "",
               command: str = "") -> StepRecord:
        record = StepRecord(len(self.result.steps), description, command, passed, detail)
        self.result.steps.append(record)
        return record

    def submit(self, node: RunningNode, command: Command,
               confirm_on: Sequence[RunningNode] = ()) -> CommandResult:
        """Execute a command outside the model (still logged and recorded)."""
        self.result.command_log.append(command.render())
        result = self._require_network().submit(node, command, confirm_on)
        self.record(f"{command.subcommand} on {node.node_id}", detail=result.summary(), command=command.render())
        return result

    def apply(
        self,
        action: Action,
        node: Optional[RunningNode] = None,
        observe_on: Optional[Iterable[RunningNode]] = None,
    ) -> CommandResult:
        """
        Execute an action, advance the model, and check the touched state.

        The model epoch follows the chain: preconditions are checked at the
        epoch before submission, and the post-state (unbond maturity) is
        computed at the epoch after the transaction was included.

        Args:
            action: Model action to perform
            node: Node the command is sent to (default: first validator)
            observe_on: Nodes whose state is compared with the prediction
                (default: the submitting node)

        Raises:
            PreconditionFailed: If the action is not valid in the model state
                (nothing is submitted)
            ModelMismatch: If the action was rejected or the observed state
                differs from the prediction
        """
        network = self._require_network()
        node = node or network.leader
        observers = list(observe_on) if observe_on is not None else [node]
        step = len(self.result.steps)
        reason = action.check(self.sync_epoch(node))
        if reason is not None:
            raise PreconditionFailed(action, reason)
        command = action.to_command()
        self.result.command_log.append(command.render())
        try:
            result = network.submit(node, command, [o for o in observers if o is not node])
        except CommandRejected as exc:
            self.record(action.describe(), False, exc.result.summary(), command.render())
            raise ModelMismatch(step, action, [{
                "field": "outcome", "key": action.kind,
                "expected": "applied", "actual": exc.result.summary(),
            }]) from exc
        before = self.sync_epoch(node)
        predicted = self.model.apply(before, action)
        self._compare(step, action, predicted, action.keys(before), observers)
        self.state = predicted
        self.record(action.describe(), True, f"tx {result.tx_hash} at height {result.height}", command.render())
        return result

    def expect_rejected(self, action: Action, node: Optional[RunningNode] = None,
                        pattern: Optional[str] = None) -> CommandResult:
        """
        Execute an action that the network must reject; the model state is kept.

        Rejections are recognised both from the client output and from the
        block receipt of a submitted transaction.

        Raises:
            ModelMismatch: If the network applied the action
        """
        network = self._require_network()
        node = node or network.leader
        step = len(self.result.steps)
        self.sync_epoch(node)
        command = action.to_command()
        self.result.command_log.append(command.render())
        try:
            result = network.submit(node, command)
        except CommandRejected as exc:
            if pattern is not None and not Expect.rejected(pattern).matches_output(exc.result.stdout, exc.result.stderr):
                raise
            self.record(action.describe(), True, f"rejected: {exc.result.summary()}", command.render())
            return exc.result
        self.record(action.describe(), False, "applied but expected a rejection", command.render())
        raise ModelMismatch(step, action, [{
            "field": "outcome", "key": action.kind, "expected": "rejected", "actual": result.summary(),
        }])

    def sync_epoch(self, node: Optional[RunningNode] = None) -> ModelState:
        """Move the model state to the chain's current epoch and return it."""
        node = node or self._require_network().leader
        self.state = self.state.at_epoch(self.cli.epoch(node))
        return self.state

    def verify(self, node: Optional[RunningNode] = None, keys: Optional[ObservationKeys] = None) -> None:
        """Compare the observed state (default: everything the model tracks) with the model."""
        network = self._require_network()
        node = node or network.leader
        self._compare(len(self.result.steps), None, self.state, keys or self.state.all_keys(), [node])
        self.record(f"state verified on {node.node_id}")

    def _compare(self, step: int, action: Optional[Action], predicted: ModelState,
                 keys: ObservationKeys, observers: Sequence[RunningNode]) -> None:
        for observer in observers:
            observed = self.cli.observe_state(observer, keys)
            discrepancies = self.model.diff(observed, predicted)
            if discrepancies:
                self.record(f"state check on {observer.node_id}", False, repr(discrepancies))
                raise ModelMismatch(step, action, discrepancies)

    # ------------------------------------------------------------------
    # Property runs
    # ------------------------------------------------------------------

    def property_run(
        self,
        kinds: Sequence[str] = DEFAULT_KINDS,
        steps: int = 100,
        node_id: Optional[str] = None,
        executor_factory: Optional[ExecutorFactory] = None,
        full_check_every: int = 25,
        examples: int = 2,
    ) -> PropertyRun:
        """
        Run the property engine against the scenario's network.

        The first example runs on the scenario's network. Later examples
        and shrink replays run on fresh networks built with the same
        arguments inside child contexts of this run.

        Raises:
            ModelMismatch: The minimal failing sequence's mismatch, after the
                run and its shrink result have been recorded
            ActionSpaceExhausted: A generated example ran out of valid actions
                before `steps`
        """
        network = self._require_network()
        model = Model(network.config.genesis, kinds=kinds)
        engine = PropertyEngine(
            model,
            executor_factory or self._executor_factory(network, node_id),
            seed=self.seed,
            steps=steps,
            examples=examples,
            max_shrink_attempts=self.settings.max_shrink_attempts,
            full_check_every=full_check_every,
            ctx=self.ctx,
        )
        run = engine.run()
        self.result.command_log.extend(run.command_log)
        self.result.steps.extend(run.records)
        if run.failure is not None:
            self.result.shrunk = [a.describe() for a in run.shrunk]
            raise run.shrunk_failure or run.failure
        if run.exhausted is not None:
            self.result.exhausted = True
            raise run.exhausted
        return run

    def _executor_factory(self, network: LocalNetwork, node_id: Optional[str]) -> ExecutorFactory:
        fresh = [False]

        def factory() -> NetworkExecutor:
            if not fresh[0]:
                fresh[0] = True
                return NetworkExecutor(network, node_id)
            child = self.ctx.child("replay")
            try:
                replay = LocalNetwork.start(child, **self._network_args)
            except BaseException:
                child.failed = True
                child.close()
                raise
            return NetworkExecutor(replay, node_id, owned_ctx=child)

        return factory


# ============================================================================
# REGISTRY
# ============================================================================

@dataclass(frozen=True)
class ScenarioSpec:
    name: str
    fn: ScenarioFn
    description: str = ""
    timeout: Optional[float] = None


class ScenarioRegistry:
    """
    Named scenarios and the scoped runner that executes them.

    Runs in progress are tracked by run id so another thread can cancel
    them (see cancel()).
    """

    def __init__(self):
        self._scenarios: Dict[str, ScenarioSpec] = {}
        self._active: Dict[str, RunContext] = {}
        self._active_lock = threading.Lock()

    def register(self, name: str, fn: Optional[ScenarioFn] = None, *,
                 description: str = "", timeout: Optional[float] = None):
        """
        Register a scenario function; usable directly or as a decorator.

        Raises:
            ValueError: If name is already registered
        """
        def add(func: ScenarioFn) -> ScenarioFn:
            if name in self._scenarios:
                raise ValueError(f"Scenario {name!r} already registered")
            doc = description or (func.__doc__ or "").strip().split("\n")[0]
            self._scenarios[name] = ScenarioSpec(name, func, doc, timeout)
            return func

        if fn is not None:
            return add(fn)
        return add

    def unregister(self, name: str) -> None:
        self._scenarios.pop(name, None)

    def names(self) -> List[str]:
        return sorted(self._scenarios)

    def get(self, name: str) -> ScenarioSpec:
        try:
            return self._scenarios[name]
        except KeyError:
            raise ScenarioNotFound(f"No scenario named {name!r} (known: {self.names()})") from None

    def run(
        self,
        name: str,
        config: Optional[HarnessSettings] = None,
        seed: int = 0,
        timeout: Optional[float] = None,
        run_id: Optional[str] = None,
        **params: Any,
    ) -> ScenarioResult:
        """
        Run a scenario inside a fresh RunContext.

        Args:
            name: Registered scenario name
            config: Harness settings (default: load_settings())
            seed: Seed handed to the scenario (property scenarios use it)
            timeout: Scenario deadline, overriding the registered and configured ones
            run_id: Run id to use (default: generated), e.g. to cancel() the run
            **params: Keyword arguments for the scenario function

        Returns:
            ScenarioResult (passed, or failed with a ModelMismatch or an
            exhausted property run)

        Raises:
            ScenarioNotFound: Unknown name
            ValueError: run_id belongs to a run still in progress
            ScenarioCancelled: The run was cancelled (timeout or cancel())
            Any other error raised by the scenario, after teardown
        """
        spec = self.get(name)
        settings = config or load_settings()
        if not is_configured():
            configure_logging(settings.logging)
        limit = timeout if timeout is not None else spec.timeout
        ctx = RunContext(settings, name=name, run_id=run_id, timeout=limit)
        with self._active_lock:
            if ctx.run_id in self._active:
                ctx.close()
                raise ValueError(f"Run {ctx.run_id!r} is already in progress")
            self._active[ctx.run_id] = ctx
        result = ScenarioResult(name=name, run_id=ctx.run_id, seed=seed)
        scenario = Scenario(ctx, result, seed)
        log = ctx.log.bind(scenario=name, seed=seed)
        log.info("scenario_started", params=params)
        started = time.monotonic()
        try:
            spec.fn(scenario, **params)
            result.passed = True
        except ModelMismatch as exc:
            ctx.failed = True
            result.error = str(exc)
            result.mismatch = exc
            log.error("scenario_mismatch", error=str(exc), shrunk=result.shrunk)
        except ActionSpaceExhausted as exc:
            ctx.failed = True
            result.exhausted = True
            result.error = str(exc)
            log.error("scenario_exhausted", error=str(exc))
        except BaseException as exc:
            ctx.failed = True
            ctx.cancel(f"aborted by {type(exc).__name__}")
            result.error = f"{type(exc).__name__}: {exc}"
            log.error("scenario_error", error=result.error)
            raise
        finally:
            result.duration = time.monotonic() - started
            if ctx.failed and settings.keep_on_failure and ctx.run_dir is not None:
                result.run_dir = str(ctx.run_dir)
            try:
                ctx.close()
            finally:
                with self._active_lock:
                    self._active.pop(ctx.run_id, None)
        log.info("scenario_finished", passed=result.passed, duration=round(result.duration, 3),
                 steps=len(result.steps))
        return result

    def cancel(self, run_id: str, reason: str = "cancelled") -> bool:
        """
        Cancel a run in progress from any thread.

        Every wait of the run raises ScenarioCancelled, and run() tears the
        run down before re-raising it.

        Returns:
            False if no run with that id is in progress
        """
        with self._active_lock:
            ctx = self._active.get(run_id)
        if ctx is None:
            return False
        ctx.cancel(reason)
        return True

    def active_runs(self) -> List[str]:
        with self._active_lock:
            return sorted(self._active)


registry = ScenarioRegistry()


def register(name: str, fn: Optional[ScenarioFn] = None, **kwargs: Any):
    """Register a scenario in the default registry."""
    return registry.register(name, fn, **kwargs)


def run(name: str, config: Optional[HarnessSettings] = None, **kwargs: Any) -> ScenarioResult:
    """Run a scenario from the default registry."""
    return registry.run(name, config, **kwargs)


def cancel(run_id: str, reason: str = "cancelled") -> bool:
    """Cancel a run of the default registry."""
    return registry.cancel(run_id, reason)


def active_runs() -> List[str]:
    """Run ids of the default registry still in progress."""
    return registry.active_runs()


# ============================================================================
# BUILT-IN SCENARIOS
# ============================================================================

@register("transfer")
def transfer_scenario(s: Scenario, amount: Any = 10, source: str = "albert",
                      target: str = "bertha", full_nodes: int = 3) -> None:
    """Transfer between two accounts on a one-validator network; check both balances on every node."""
    network = s.start_network(1 + full_nodes, validators=1)
    s.apply(Transfer(source, target, to_amount(amount)), observe_on=network.nodes.values())


@register("transfer_insufficient_balance")
def transfer_insufficient_balance(s: Scenario, excess: Any = 1, source: str = "albert",
                                  target: str = "bertha") -> None:
    """A transfer above the sender's balance is rejected and leaves balances unchanged."""
    s.start_network(1)
    amount = s.state.balance(source) + to_amount(excess)
    s.expect_rejected(Transfer(source, target, amount))
    s.verify(keys=ObservationKeys(accounts=(source, target)))


@register("bond_and_unbond")
def bond_and_unbond(s: Scenario, delegator: str = "albert", amount: Any = 100) -> None:
    """Delegate to a validator, unbond half, and check bonds and the validator set."""
    network = s.start_network(2, validators=2)
    validator = network.leader.node_id
    amount = to_amount(amount)
    s.apply(Bond(delegator, validator, amount))
    s.apply(Unbond(delegator, validator, Decimal(int(amount / 2)) or Decimal(1)))
    s.verify()


@register("unbond_and_withdraw")
def unbond_and_withdraw(s: Scenario, delegator: str = "albert", amount: Any = 100) -> None:
    """Unbond a delegation, wait for it to mature, and withdraw it back to the balance."""
    network = s.start_network(1, overrides={"epoch_blocks": 3, "unbonding_len": 1})
    validator = network.leader.node_id
    amount = to_amount(amount)
    s.apply(Bond(delegator, validator, amount))
    s.apply(Unbond(delegator, validator, amount))
    matures = max(epoch for _, _, epoch in s.state.unbonds)
    s.sync.await_condition(network.leader, EpochAtLeast(matures))
    s.apply(Withdraw(delegator, validator))
    s.verify()


@register("governance_proposal")
def governance_proposal(s: Scenario, author: str = "albert") -> None:
    """Submit a proposal (deposit goes to escrow) and vote on it with a validator."""
    network = s.start_network(1)
    proposal_id = s.state.next_proposal_id
    s.apply(SubmitProposal(author))
    s.apply(VoteProposal(proposal_id, network.leader.node_id, "yay"))
    info = s.cli.query(network.leader, commands.QueryKind.PROPOSAL, proposal_id=proposal_id)
    if info is None or info.votes != 1:
        raise ModelMismatch(len(s.result.steps), None, [{
            "field": "proposal_votes", "key": proposal_id, "expected": 1,
            "actual": None if info is None else info.votes,
        }])
    s.record(f"proposal {proposal_id} has {info.votes} vote(s)")


@register("vp_always_false_rejects")
def vp_always_false_rejects(s: Scenario, account: str = "christel", target: str = "albert") -> None:
    """An account guarded by an always-rejecting validity predicate cannot send tokens."""
    network = s.start_network(1, overrides={"wasm": [VP_ALWAYS_FALSE]})
    code_path = network.config.genesis.wasm_map[VP_ALWAYS_FALSE]
    s.submit(network.leader, commands.update_account(account, code_path))
    s.expect_rejected(Transfer(account, target, Decimal(1)), pattern="rejected by VPs")
    s.verify(keys=ObservationKeys(accounts=(account, target)))


@register("property_bond_unbond_transfer")
def property_bond_unbond_transfer(s: Scenario, steps: int = 200, validators: int = 3,
                                  kinds: Sequence[str] = DEFAULT_KINDS, examples: int = 2) -> None:
    """Random model-valid bond/unbond/transfer actions against a multi-validator network."""
    s.start_network(validators, validators=validators)
    s.property_run(kinds=kinds, steps=steps, examples=examples)
