"""
Core types and exceptions for the ledger test harness.

This module provides the foundational data structures shared by every other module:
1. Enums: node roles, node status, command outcomes
2. Immutable data structures: NodeDescriptor, GenesisParams, NetworkConfig,
   Expect, Command, CommandResult
3. Exceptions: HarnessError and the failure taxonomy used by scenarios

Everything here is plain data. Nothing in this module spawns processes,
touches the filesystem or talks to a node.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
import re
import shlex
from typing import (
    Dict, List, Optional, Any, Tuple, Mapping
)


# ============================================================================
# CONSTANTS
# ============================================================================

# Native token of the network under test. Every amount in the model is
# denominated in this token.
NATIVE_TOKEN = "NAM"

# Loopback host used for every listen address.
LOCALHOST = "127.0.0.1"

# First port handed out by the sequential port strategy.
DEFAULT_BASE_PORT = 26600

# Ports claimed per node: p2p and rpc.
PORTS_PER_NODE = 2

# Token amounts are rendered with at most this many decimal places.
TOKEN_DECIMAL_PLACES = 6


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from account alias to token amount.
Balances = Dict[str, Decimal]

# Mapping from validator alias to voting power (bonded stake).
VotingPowers = Dict[str, Decimal]


# ============================================================================
# ENUMS
# ============================================================================

class Role(Enum):
    """
    Role a node plays in the local network.

    VALIDATOR: Participates in consensus and produces blocks.
    FULL: Follows the chain without voting.
    RELAYER: Follows the chain and relays events to an external bridge.
    """
    VALIDATOR = "validator"
    FULL = "full"
    RELAYER = "relayer"


class NodeStatus(Enum):
    """
    Last observed status of a running node.

    STARTING: Process spawned, readiness not yet confirmed.
    SYNCED: A sync condition was observed to hold.
    DEGRADED: A sync condition timed out while the process was alive.
    EXITED: The process is no longer running.
    """
    STARTING = "starting"
    SYNCED = "synced"
    DEGRADED = "degraded"
    EXITED = "exited"


class Outcome(Enum):
    """
    Classified outcome of a CLI command.

    APPLIED: The command succeeded (transactions were accepted and applied).
    REJECTED: The node answered with a protocol-level rejection.
    """
    APPLIED = "applied"
    REJECTED = "rejected"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class HarnessError(Exception):
    """Base exception for all harness errors."""
    pass


class CapacityError(HarnessError):
    """Raised when a topology asks for more nodes than the process budget allows."""
    pass


class SpawnError(HarnessError):
    """Raised when a node binary cannot be launched (missing binary, port conflict)."""

    def __init__(self, node_id: str, reason: str):
        super().__init__(f"failed to spawn {node_id}: {reason}")
        self.node_id = node_id
        self.reason = reason


class SyncTimeoutError(HarnessError):
    """
    Raised when a sync condition is not observed before its deadline.

    Attributes:
        node_id: Node that was polled
        predicate: Human readable description of the awaited condition
        timeout: Configured timeout in seconds
        elapsed: Seconds actually spent waiting
        first_observation: First observation made (None if no query succeeded)
        last_observation: Last observation made (None if no query succeeded)
        polls: Number of completed polls
        exit_code: Exit code if the node died while waiting
        last_error: Last query error seen while polling
    """

    def __init__(
        self,
        node_id: str,
        predicate: str,
        timeout: float,
        elapsed: float,
        first_observation: Any = None,
        last_observation: Any = None,
        polls: int = 0,
        exit_code: Optional[int] = None,
        last_error: Optional[str] = None,
    ):
        self.node_id = node_id
        self.predicate = predicate
        self.timeout = timeout
        self.elapsed = elapsed
        self.first_observation = first_observation
        self.last_observation = last_observation
        self.polls = polls
        self.exit_code = exit_code
        self.last_error = last_error
        super().__init__(
            f"{node_id}: condition '{predicate}' not met within {timeout:.2f}s "
            f"(elapsed {elapsed:.2f}s, {polls} polls, {self.diagnosis}, "
            f"last observed {last_observation!r})"
        )

    @property
    def progressed(self) -> bool:
        """True when the chain moved between the first and last observation."""
        if self.first_observation is None or self.last_observation is None:
            return False
        return self.first_observation != self.last_observation

    @property
    def diagnosis(self) -> str:
        """Distinguish a stalled or unreachable node from a slow one."""
        if self.exit_code is not None:
            return f"node exited with code {self.exit_code}"
        if self.last_observation is None:
            return "node never answered"
        if self.progressed:
            return "chain progressing but too slow"
        return "chain stalled"


class CommandHarnessError(HarnessError):
    """
    Raised for malformed output, unexpected exit codes or command timeouts.

    Indicates an environment or harness defect, never a protocol decision.
    """

    def __init__(self, message: str, result: Optional['CommandResult'] = None, node_id: Optional[str] = None):
        prefix = f"{node_id}: " if node_id else ""
        super().__init__(prefix + message)
        self.result = result
        self.node_id = node_id


class CommandRejected(HarnessError):
    """
    Raised when the node rejects a command at the protocol level.

    This is the expected outcome of negative tests. Commands built with
    Expect.rejected() return the result instead of raising.
    """

    def __init__(self, result: 'CommandResult', node_id: str):
        super().__init__(
            f"{node_id}: '{result.command.render()}' rejected: {result.summary()}"
        )
        self.result = result
        self.node_id = node_id


class ModelMismatch(HarnessError):
    """
    Raised when observed network state diverges from the model's prediction.

    Attributes:
        step: Index of the action after which the divergence was observed
        action: The action that was executed last
        discrepancies: List of dicts with keys: field, key, expected, actual
    """

    def __init__(self, step: int, action: Any, discrepancies: List[Dict[str, Any]]):
        self.step = step
        self.action = action
        self.discrepancies = discrepancies
        lines = ", ".join(
            f"{d['field']}[{d['key']}]: expected {d['expected']}, got {d['actual']}"
            for d in discrepancies[:5]
        )
        more = f" (+{len(discrepancies) - 5} more)" if len(discrepancies) > 5 else ""
        super().__init__(f"step {step} {action!r}: {lines}{more}")


class ActionSpaceExhausted(HarnessError):
    """
    Raised when a generated run has no valid action left before its step count.

    Attributes:
        step: Index of the step that found no candidate
        steps: Number of steps the run asked for
    """

    def __init__(self, step: int, steps: int):
        self.step = step
        self.steps = steps
        super().__init__(f"no valid action at step {step} of {steps}")


class ScenarioCancelled(HarnessError):
    """Raised inside a scenario once its run context has been cancelled."""
    pass


class ScenarioNotFound(HarnessError):
    """Raised when running a scenario name that was never registered."""
    pass


# ============================================================================
# HELPERS
# ============================================================================

def to_amount(value: Any) -> Decimal:
    """
    Convert a value to a token amount.

    Floats go through str() to avoid binary representation noise.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def format_amount(amount: Decimal) -> str:
    """
    Render an amount the way the client CLI expects it.

    Decimal("100.000") and Decimal("100") both render as "100".
    """
    normalized = amount.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a mapping to a sorted tuple of pairs for frozen dataclasses."""
    if not mapping:
        return ()
    return tuple(sorted(mapping.items()))


# ============================================================================
# NETWORK DESCRIPTION
# ============================================================================

@dataclass(frozen=True, slots=True)
class NodeDescriptor:
    """
    Static description of one node of the local network.

    Attributes:
        node_id: Unique alias of the node (e.g. "validator-0")
        role: Role of the node in the network
        p2p_port: Port for peer-to-peer traffic
        rpc_port: Port the client CLI talks to
        data_dir: Isolated data directory for this node
        command: argv prefix that launches the node binary
        host: Listen host
    """
    node_id: str
    role: Role
    p2p_port: int
    rpc_port: int
    data_dir: Path
    command: Tuple[str, ...]
    host: str = LOCALHOST

    def __post_init__(self):
        if not self.node_id or not self.node_id.strip():
            raise ValueError("Node id cannot be empty")
        if not self.command:
            raise ValueError(f"Node {self.node_id} has no launch command")
        if self.p2p_port == self.rpc_port:
            raise ValueError(f"Node {self.node_id} reuses port {self.p2p_port}")

    @property
    def rpc_address(self) -> str:
        return f"{self.host}:{self.rpc_port}"

    @property
    def p2p_address(self) -> str:
        return f"{self.host}:{self.p2p_port}"

    @property
    def ports(self) -> Tuple[int, int]:
        return (self.p2p_port, self.rpc_port)

    def __repr__(self) -> str:
        return f"Node({self.node_id}, {self.role.value}, rpc={self.rpc_address})"


@dataclass(frozen=True, slots=True)
class GenesisParams:
    """
    Genesis parameters shared by every node of a network.

    Mappings are stored as sorted tuples so the params are hashable and
    their serialization is deterministic. Use the *_map properties for
    dictionary access.

    Attributes:
        chain_id: Chain identifier written into genesis
        balances: Initial account balances (account -> amount)
        validators: Initial validator self-bonds (validator -> stake)
        epoch_blocks: Number of blocks per epoch
        block_time: Target seconds between blocks
        unbonding_len: Epochs an unbond waits before it can be withdrawn
        min_proposal_deposit: Deposit locked by a governance proposal
        token: Native token symbol
        wasm: Wasm artifacts available to the network (name -> path)
    """
    chain_id: str
    balances: Tuple[Tuple[str, Decimal], ...]
    validators: Tuple[Tuple[str, Decimal], ...]
    epoch_blocks: int = 10
    block_time: float = 0.1
    unbonding_len: int = 2
    min_proposal_deposit: Decimal = Decimal("50")
    token: str = NATIVE_TOKEN
    wasm: Tuple[Tuple[str, str], ...] = ()

    def __post_init__(self):
        if not self.validators:
            raise ValueError("Genesis validator set cannot be empty")
        for name, stake in self.validators:
            if stake <= 0:
                raise ValueError(f"Validator {name} must have positive stake, got {stake}")
        for name, amount in self.balances:
            if amount < 0:
                raise ValueError(f"Account {name} has negative balance {amount}")
        if self.epoch_blocks < 1:
            raise ValueError("epoch_blocks must be at least 1")
        if self.unbonding_len < 0:
            raise ValueError("unbonding_len cannot be negative")

    @classmethod
    def create(
        cls,
        chain_id: str,
        balances: Mapping[str, Any],
        validators: Mapping[str, Any],
        **kwargs,
    ) -> 'GenesisParams':
        """Build params from plain mappings, converting amounts to Decimal."""
        return cls(
            chain_id=chain_id,
            balances=_freeze({k: to_amount(v) for k, v in balances.items()}),
            validators=_freeze({k: to_amount(v) for k, v in validators.items()}),
            **kwargs,
        )

    @property
    def balance_map(self) -> Balances:
        return dict(self.balances)

    @property
    def validator_map(self) -> VotingPowers:
        return dict(self.validators)

    @property
    def wasm_map(self) -> Dict[str, str]:
        return dict(self.wasm)

    @property
    def accounts(self) -> List[str]:
        """All accounts known at genesis (funded accounts and validators), sorted."""
        return sorted(set(self.balance_map) | set(self.validator_map))

    def total_supply(self) -> Decimal:
        """Sum of all balances and all bonded stake at genesis."""
        return (sum((a for _, a in self.balances), Decimal("0"))
                + sum((s for _, s in self.validators), Decimal("0")))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation written to genesis.json."""
        return {
            "chain_id": self.chain_id,
            "token": self.token,
            "balances": {k: format_amount(v) for k, v in self.balances},
            "validators": {k: format_amount(v) for k, v in self.validators},
            "parameters": {
                "epoch_blocks": self.epoch_blocks,
                "block_time": self.block_time,
                "unbonding_len": self.unbonding_len,
                "min_proposal_deposit": format_amount(self.min_proposal_deposit),
            },
            "wasm": dict(self.wasm),
        }


@dataclass(frozen=True, slots=True)
class NetworkConfig:
    """
    Fully specified local network: node descriptors plus genesis.

    Invariants (checked on construction):
        - The genesis validator set is non-empty
        - Ports are unique across all descriptors
        - Node ids are unique
        - At least one node runs with the validator role
    """
    run_id: str
    base_dir: Path
    nodes: Tuple[NodeDescriptor, ...]
    genesis: GenesisParams

    def __post_init__(self):
        if not self.nodes:
            raise ValueError("Network must contain at least one node")
        seen_ids = set()
        seen_ports: Dict[int, str] = {}
        for node in self.nodes:
            if node.node_id in seen_ids:
                raise ValueError(f"Duplicate node id {node.node_id}")
            seen_ids.add(node.node_id)
            for port in node.ports:
                if port in seen_ports:
                    raise ValueError(
                        f"Port {port} used by both {seen_ports[port]} and {node.node_id}"
                    )
                seen_ports[port] = node.node_id
        if not any(n.role == Role.VALIDATOR for n in self.nodes):
            raise ValueError("Network needs at least one validator node")

    @property
    def genesis_path(self) -> Path:
        return self.base_dir / "genesis.json"

    def node(self, node_id: str) -> NodeDescriptor:
        """Return the descriptor for node_id."""
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        raise KeyError(f"No node {node_id} in network {self.run_id}")

    def by_role(self, role: Role) -> List[NodeDescriptor]:
        """Return descriptors with the given role, in configuration order."""
        return [n for n in self.nodes if n.role == role]

    def all_ports(self) -> List[int]:
        return sorted(p for n in self.nodes for p in n.ports)


# ============================================================================
# COMMANDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Expect:
    """
    Expected outcome of a command.

    Attributes:
        outcome: APPLIED or REJECTED
        pattern: Optional regular expression searched in the combined output
        exact: Optional exact text the stripped stdout must equal
    """
    outcome: Outcome = Outcome.APPLIED
    pattern: Optional[str] = None
    exact: Optional[str] = None

    @classmethod
    def success(cls, pattern: Optional[str] = None) -> 'Expect':
        return cls(Outcome.APPLIED, pattern=pattern)

    @classmethod
    def rejected(cls, pattern: Optional[str] = None) -> 'Expect':
        return cls(Outcome.REJECTED, pattern=pattern)

    @classmethod
    def text(cls, exact: str) -> 'Expect':
        return cls(Outcome.APPLIED, exact=exact)

    def matches_output(self, stdout: str, stderr: str = "") -> bool:
        """Check the output part of the expectation (outcome is checked by the driver)."""
        if self.exact is not None and stdout.strip() != self.exact.strip():
            return False
        if self.pattern is not None:
            return re.search(self.pattern, stdout + "\n" + stderr, re.MULTILINE) is not None
        return True


@dataclass(frozen=True, slots=True)
class Command:
    """
    A client CLI invocation template.

    The target node is supplied when the command is executed, so the same
    Command can be issued against any node.

    Attributes:
        subcommand: Client subcommand (e.g. "transfer", "balance")
        args: Positional and flag arguments, in order
        expect: Expected outcome matcher
        timeout: Per-command timeout in seconds (None = driver default)
        submits_tx: True if the command submits a transaction
    """
    subcommand: str
    args: Tuple[str, ...] = ()
    expect: Expect = field(default_factory=Expect)
    timeout: Optional[float] = None
    submits_tx: bool = False

    def __post_init__(self):
        if not self.subcommand or not self.subcommand.strip():
            raise ValueError("Command subcommand cannot be empty")

    @classmethod
    def build(
        cls,
        subcommand: str,
        *positional: str,
        expect: Optional[Expect] = None,
        timeout: Optional[float] = None,
        submits_tx: bool = False,
        **flags: Any,
    ) -> 'Command':
        """
        Build a command from positional args and keyword flags.

        Flags render as --flag-name value in keyword order. A flag whose
        value is True renders as a bare switch; None and False are dropped.

        Example:
            Command.build("transfer", source="alice", target="bob",
                          token="NAM", amount=Decimal("10"), submits_tx=True)
            # transfer --source alice --target bob --token NAM --amount 10
        """
        args: List[str] = list(positional)
        for name, value in flags.items():
            if value is None or value is False:
                continue
            flag = "--" + name.replace("_", "-")
            if value is True:
                args.append(flag)
            elif isinstance(value, Decimal):
                args.extend([flag, format_amount(value)])
            else:
                args.extend([flag, str(value)])
        return cls(
            subcommand=subcommand,
            args=tuple(args),
            expect=expect or Expect(),
            timeout=timeout,
            submits_tx=submits_tx,
        )

    def with_expect(self, expect: Expect) -> 'Command':
        return Command(self.subcommand, self.args, expect, self.timeout, self.submits_tx)

    def argv(self) -> Tuple[str, ...]:
        return (self.subcommand,) + self.args

    def render(self) -> str:
        """Deterministic shell-quoted rendering, used for logs and replay comparison."""
        return " ".join(shlex.quote(part) for part in self.argv())

    def __repr__(self) -> str:
        return f"Command({self.render()})"


@dataclass(frozen=True, slots=True)
class CommandResult:
    """
    Captured result of one executed command.

    Attributes:
        command: The command template that was executed
        node_id: Node the command targeted
        argv: Full argv that was run
        exit_code: Process exit code
        stdout: Captured standard output
        stderr: Captured standard error
        duration: Wall-clock seconds
        outcome: Classified outcome
        tx_hash: Transaction hash reported by the client, if any
        height: Block height reported by the client, if any
    """
    command: Command
    node_id: str
    argv: Tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str
    duration: float
    outcome: Outcome
    tx_hash: Optional[str] = None
    height: Optional[int] = None

    @property
    def output(self) -> str:
        return self.stdout + self.stderr

    def summary(self, limit: int = 200) -> str:
        """Last meaningful output line(s), truncated for error messages."""
        text = (self.stderr.strip() or self.stdout.strip()).splitlines()
        tail = text[-1] if text else f"exit code {self.exit_code}"
        return tail if len(tail) <= limit else tail[:limit - 3] + "..."


