"""
ledger_harness - End-to-end test harness for a local ledger network

Launches node processes as a local network, drives them through the client
CLI, waits for chain states and checks observed state against a reference
model of balances, bonds, the validator set and governance proposals.

Usage:
    from decimal import Decimal
    from ledger_harness import load_settings, run, register, Transfer

    settings = load_settings("harness.yaml")

    # Built-in directed scenario
    result = run("transfer", settings, amount=10)
    assert result.passed, result.summary()

    # Built-in property scenario: 200 random bond/unbond/transfer actions
    result = run("property_bond_unbond_transfer", settings, seed=42, steps=200)
    print(result.command_log[:3])

    # Custom scenario
    @register("double_transfer")
    def double_transfer(s):
        s.start_network(node_count=2)
        s.apply(Transfer("albert", "bertha", Decimal(5)))
        s.apply(Transfer("bertha", "christel", Decimal(3)))
"""

# Core types
from .core import (
    Role,
    NodeStatus,
    Outcome,
    NodeDescriptor,
    GenesisParams,
    NetworkConfig,
    Expect,
    Command,
    CommandResult,
    HarnessError,
    CapacityError,
    SpawnError,
    SyncTimeoutError,
    CommandRejected,
    CommandHarnessError,
    ModelMismatch,
    ActionSpaceExhausted,
    ScenarioCancelled,
    ScenarioNotFound,
    NATIVE_TOKEN,
)

# Configuration and logging
from .config import HarnessSettings, LoggingConfig, load_settings
from .logs import configure_logging, get_logger

# Orchestration
from .context import RunContext
from .topology import TopologyBuilder, PortAllocator, default_roles
from .supervisor import ProcessSupervisor, RunningNode, OutputChannel, cleanup_run, registered_nodes
from .wasm import WasmCatalog, ArtifactNotFound
from .cli import CliDriver, QueryKind, ObservationKeys, ObservedState
from .sync import ChainSyncMonitor, Condition, HeightAtLeast, EpochAtLeast, TxApplied, Observation
from .network import LocalNetwork

# State-machine testing
from .model import (
    Model,
    ModelState,
    Action,
    Transfer,
    Bond,
    Unbond,
    Withdraw,
    SubmitProposal,
    VoteProposal,
    PreconditionFailed,
    SupplyNotConserved,
    DEFAULT_KINDS,
)
from .engine import Executor, NetworkExecutor, PropertyEngine, PropertyRun, StepRecord, ActionMachine

# Scenarios
from .scenarios import (
    Scenario, ScenarioResult, ScenarioRegistry, registry, register, run, cancel, active_runs,
)
