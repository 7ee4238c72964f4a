"""
network.py - Local network handle

Ties the Topology Builder, Process Supervisor, CLI Driver and Chain Sync
Monitor together for one run:

    network = LocalNetwork.start(ctx, node_count=4)
    result = network.submit(network.leader, transfer("albert", "bertha", 10))
    network.cli.query(network.node("full-0"), QueryKind.BALANCE, owner="bertha")

All processes belong to the RunContext and are torn down with it.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from .cli import CliDriver
from .context import RunContext
from .core import Command, CommandResult, NetworkConfig, Outcome, Role
from .supervisor import ProcessSupervisor, RunningNode
from .sync import ChainSyncMonitor, HeightAtLeast, TxApplied
from .topology import TopologyBuilder, default_roles


class LocalNetwork:
    """A running local network: config, live nodes and the drivers that talk to them."""

    def __init__(
        self,
        ctx: RunContext,
        config: NetworkConfig,
        supervisor: ProcessSupervisor,
        cli: CliDriver,
        sync: ChainSyncMonitor,
    ):
        self.ctx = ctx
        self.config = config
        self.supervisor = supervisor
        self.cli = cli
        self.sync = sync
        self.nodes: Dict[str, RunningNode] = {}
        self.log = ctx.log.bind(component="network", chain_id=config.genesis.chain_id)

    @classmethod
    def create(
        cls,
        ctx: RunContext,
        node_count: int,
        roles: Optional[Sequence[Role]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> LocalNetwork:
        """Build the topology and wire the drivers without spawning anything."""
        config = TopologyBuilder(ctx).build(node_count, roles, overrides)
        cli = CliDriver(ctx)
        return cls(ctx, config, ProcessSupervisor(ctx), cli, ChainSyncMonitor(ctx, cli))

    @classmethod
    def start(
        cls,
        ctx: RunContext,
        node_count: int,
        roles: Optional[Sequence[Role]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        validators: int = 1,
        ready_height: int = 1,
    ) -> LocalNetwork:
        """
        Build, spawn and wait until every node reports ready_height.

        Args:
            ctx: Run context owning every resource
            node_count: Number of nodes
            roles: Explicit roles (default: `validators` validators, rest full nodes)
            overrides: Topology overrides (see topology.OVERRIDE_KEYS)
            validators: Validator count when roles is not given
            ready_height: Height every node must reach before start() returns

        Raises:
            CapacityError, SpawnError, SyncTimeoutError
        """
        if roles is None:
            roles = default_roles(node_count, validators)
        network = cls.create(ctx, node_count, roles, overrides)
        network.spawn_all()
        network.wait_height(ready_height, timeout=ctx.settings.startup_timeout)
        return network

    # ========================================================================
    # NODES
    # ========================================================================

    def spawn_all(self) -> List[RunningNode]:
        for descriptor in self.config.nodes:
            self.nodes[descriptor.node_id] = self.supervisor.spawn(descriptor)
        self.log.info("network_spawned", nodes=list(self.nodes))
        return list(self.nodes.values())

    def node(self, node_id: str) -> RunningNode:
        return self.nodes[node_id]

    def by_role(self, role: Role) -> List[RunningNode]:
        return [n for n in self.nodes.values() if n.role == role]

    @property
    def validators(self) -> List[RunningNode]:
        return self.by_role(Role.VALIDATOR)

    @property
    def full_nodes(self) -> List[RunningNode]:
        return self.by_role(Role.FULL)

    @property
    def leader(self) -> RunningNode:
        """First validator in configuration order."""
        return self.validators[0]

    def kill_node(self, node_id: str) -> Optional[int]:
        return self.supervisor.kill(self.nodes[node_id])

    def restart_node(self, node_id: str, ready_height: Optional[int] = None) -> RunningNode:
        node = self.supervisor.restart(self.nodes[node_id])
        self.nodes[node_id] = node
        if ready_height is not None:
            self.sync.await_condition(node, HeightAtLeast(ready_height),
                                      timeout=self.ctx.settings.startup_timeout)
        return node

    # ========================================================================
    # CHAIN
    # ========================================================================

    def wait_height(self, height: int, nodes: Optional[Sequence[RunningNode]] = None,
                    timeout: Optional[float] = None) -> int:
        """Wait until every node (default: all) reaches height; return the lowest height seen."""
        observations = self.sync.await_all(list(nodes or self.nodes.values()), HeightAtLeast(height), timeout)
        return min(o.value for o in observations.values())

    def submit(self, node: RunningNode, command: Command, confirm_on: Sequence[RunningNode] = ()) -> CommandResult:
        """
        Execute a command and, for transactions, wait until it is in a block.

        The block receipt of a transaction decides its outcome, so clients
        that return before inclusion are classified like those that wait.

        Args:
            node: Node the command is sent to
            command: Command to execute
            confirm_on: Additional nodes that must also see the transaction

        Returns:
            The CommandResult of the submission, confirmed by its receipt

        Raises:
            CommandRejected: The client or the block rejected the transaction
        """
        result = self.cli.execute(node, command)
        if command.submits_tx and result.tx_hash and result.outcome == Outcome.APPLIED:
            targets = [node, *confirm_on]
            observations = self.sync.await_all(targets, TxApplied(result.tx_hash))
            result = self.cli.confirm(node, result, observations[node.node_id].value)
        return result

    def stop(self) -> None:
        self.supervisor.shutdown_all()
