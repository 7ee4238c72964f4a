"""
sync.py - Chain Sync Monitor

Polls node state through the CLI Driver until a condition holds or a
deadline passes.

Timing guarantees of await_condition():
    - the condition is checked immediately, so an already-true condition
      returns without waiting
    - between polls the caller sleeps until the poll interval elapses or
      the node prints new output, whichever comes first
    - a condition that never holds fails no earlier than the timeout and no
      later than the timeout plus one poll interval (plus one query)

Every SyncTimeoutError records the node, the condition text and the first
and last observations, so "never happened" can be told apart from "too slow".
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

from .cli import CliDriver, QueryKind
from .context import RunContext
from .core import CommandHarnessError, NodeStatus, SyncTimeoutError
from .supervisor import RunningNode

# Longest uninterrupted sleep; cancellation is noticed within this.
_WAIT_SLICE = 0.1


# ============================================================================
# CONDITIONS
# ============================================================================

class Condition:
    """
    A predicate over an observation of one node.

    Subclasses implement observe() (one query round trip) and holds().
    """

    description = "condition"

    def observe(self, cli: CliDriver, node: RunningNode) -> Any:
        raise NotImplementedError

    def holds(self, observation: Any) -> bool:
        raise NotImplementedError

    @staticmethod
    def custom(
        description: str,
        observe: Callable[[RunningNode], Any],
        holds: Callable[[Any], bool],
    ) -> Condition:
        """Build a condition from plain callables."""
        return _CustomCondition(description, observe, holds)

    def __repr__(self) -> str:
        return f"Condition({self.description})"


class _CustomCondition(Condition):
    def __init__(self, description, observe, holds):
        self.description = description
        self._observe = observe
        self._holds = holds

    def observe(self, cli: CliDriver, node: RunningNode) -> Any:
        return self._observe(node)

    def holds(self, observation: Any) -> bool:
        return bool(self._holds(observation))


class HeightAtLeast(Condition):
    """Last committed block height >= height."""

    def __init__(self, height: int):
        self.height = height
        self.description = f"height >= {height}"

    def observe(self, cli: CliDriver, node: RunningNode) -> int:
        return cli.height(node)

    def holds(self, observation: int) -> bool:
        return observation >= self.height


class EpochAtLeast(Condition):
    """Last committed epoch >= epoch."""

    def __init__(self, epoch: int):
        self.epoch = epoch
        self.description = f"epoch >= {epoch}"

    def observe(self, cli: CliDriver, node: RunningNode) -> int:
        return cli.epoch(node)

    def holds(self, observation: int) -> bool:
        return observation >= self.epoch


class TxApplied(Condition):
    """
    Transaction tx_hash is included in a block.

    The satisfying observation is a TxReceipt; receipt.applied tells whether
    the transaction was accepted.
    """

    def __init__(self, tx_hash: str):
        self.tx_hash = tx_hash
        self.description = f"transaction {tx_hash} applied"

    def observe(self, cli: CliDriver, node: RunningNode) -> Any:
        return cli.query(node, QueryKind.TX_RESULT, tx_hash=self.tx_hash)

    def holds(self, observation: Any) -> bool:
        return observation is not None


@dataclass(frozen=True, slots=True)
class Observation:
    """Observation that satisfied a condition."""
    node_id: str
    condition: str
    value: Any
    elapsed: float
    polls: int


# ============================================================================
# MONITOR
# ============================================================================

class ChainSyncMonitor:
    """
    Waits for chain conditions on running nodes.

    Example:
        sync = ChainSyncMonitor(ctx, cli)
        sync.await_condition(node, HeightAtLeast(5), timeout=30)
        sync.await_all(nodes, TxApplied(result.tx_hash))
    """

    def __init__(self, ctx: RunContext, cli: CliDriver):
        self.ctx = ctx
        self.cli = cli
        self.settings = ctx.settings
        self.log = ctx.log.bind(component="sync")

    def await_condition(
        self,
        node: RunningNode,
        condition: Condition,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> Observation:
        """
        Poll node until condition holds.

        Args:
            node: Node to observe
            condition: Condition to evaluate
            timeout: Seconds before giving up (default settings.sync_timeout)
            interval: Seconds between polls (default settings.poll_interval)

        Returns:
            The satisfying Observation

        Raises:
            SyncTimeoutError: Deadline passed, or the node exited while waiting
            ScenarioCancelled: The run was cancelled
        """
        timeout = self.settings.sync_timeout if timeout is None else timeout
        interval = self.settings.poll_interval if interval is None else interval
        started = time.monotonic()
        deadline = started + timeout
        first = last = None
        polls = 0
        last_error: Optional[str] = None

        while True:
            self.ctx.check_cancelled()
            if node.poll() is not None:
                raise self._failure(node, condition, timeout, started, first, last, polls, last_error)
            try:
                value = condition.observe(self.cli, node)
            except CommandHarnessError as exc:
                # Node not answering yet (still starting, or restarting).
                last_error = str(exc)
            else:
                polls += 1
                if first is None:
                    first = value
                last = value
                if condition.holds(value):
                    node.status = NodeStatus.SYNCED
                    elapsed = time.monotonic() - started
                    self.log.debug("sync_condition_met", node=node.node_id,
                                   condition=condition.description, elapsed=round(elapsed, 3), polls=polls)
                    return Observation(node.node_id, condition.description, value, elapsed, polls)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise self._failure(node, condition, timeout, started, first, last, polls, last_error)
            self._suspend(node, min(interval, remaining))

    def _suspend(self, node: RunningNode, seconds: float) -> None:
        """Sleep until seconds elapse, the node prints a new line, or the run is cancelled."""
        end = time.monotonic() + seconds
        baseline = node.output.line_count
        while True:
            remaining = end - time.monotonic()
            if remaining <= 0 or self.ctx.cancelled:
                return
            if node.output.wait_for_output(min(remaining, _WAIT_SLICE), since=baseline):
                return

    def _failure(self, node, condition, timeout, started, first, last, polls, last_error) -> SyncTimeoutError:
        exit_code = node.poll()
        if exit_code is None:
            node.status = NodeStatus.DEGRADED
        error = SyncTimeoutError(
            node_id=node.node_id,
            predicate=condition.description,
            timeout=timeout,
            elapsed=time.monotonic() - started,
            first_observation=first,
            last_observation=last,
            polls=polls,
            exit_code=exit_code,
            last_error=last_error,
        )
        self.log.error("sync_timeout", node=node.node_id, condition=condition.description,
                       elapsed=round(error.elapsed, 3), diagnosis=error.diagnosis,
                       last_observation=repr(last), last_error=last_error,
                       output_tail=node.output.tail(5))
        return error

    def await_all(
        self,
        nodes: Sequence[RunningNode],
        condition: Condition,
        timeout: Optional[float] = None,
    ) -> Dict[str, Observation]:
        """
        Wait for condition on every node concurrently.

        All waits run to completion (each is bounded by timeout); if any
        failed, the error of the first failing node in `nodes` order is raised.

        Returns:
            Mapping node id -> Observation, in the order of nodes
        """
        if not nodes:
            return {}
        with ThreadPoolExecutor(max_workers=len(nodes), thread_name_prefix="sync") as pool:
            futures = {
                node.node_id: pool.submit(self.await_condition, node, condition, timeout)
                for node in nodes
            }
        errors = [f.exception() for f in futures.values() if f.exception() is not None]
        if errors:
            raise errors[0]
        return {node_id: f.result() for node_id, f in futures.items()}
