"""
topology.py - Network Topology Builder

Generates the per-run configuration of a local network:
    - node ids and roles
    - non-conflicting ports (sequential or seeded-random)
    - isolated data directories under the run directory
    - genesis.json and one config.json per node

Port allocation is serialized process-wide: ports claimed by one run are
never handed to another run until the first run is torn down.
"""

from __future__ import annotations

import hashlib
import json
import random
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from .context import RunContext
from .core import (
    CapacityError, GenesisParams, NetworkConfig, NodeDescriptor, Role,
    PORTS_PER_NODE, LOCALHOST, to_amount,
)
from .supervisor import port_is_free
from .wasm import WasmCatalog

# Default genesis accounts and their liquid balances.
DEFAULT_ACCOUNTS = {
    "albert": 1_000_000,
    "bertha": 1_000_000,
    "christel": 1_000_000,
}

# Self-bonded stake of every genesis validator unless overridden.
DEFAULT_VALIDATOR_STAKE = 1_000

# Liquid balance of every genesis validator account unless overridden.
DEFAULT_VALIDATOR_BALANCE = 10_000

# Range used by the random port strategy.
RANDOM_PORT_RANGE = (20_000, 60_000)

# Keys accepted in build(overrides=...)
OVERRIDE_KEYS = {
    "chain_id", "balances", "validator_stakes", "validator_balance",
    "epoch_blocks", "block_time", "unbonding_len", "min_proposal_deposit",
    "wasm", "port_strategy", "port_seed", "base_port", "node_ids",
}


# ============================================================================
# PORT ALLOCATION
# ============================================================================

class PortAllocator:
    """
    Process-wide port allocator.

    All allocations go through one lock so concurrent scenario runs never
    receive overlapping ports. Ports are held until release() is called.
    """

    _lock = threading.Lock()
    _claimed: Set[int] = set()

    @classmethod
    def allocate(
        cls,
        count: int,
        strategy: str = "sequential",
        base_port: int = 26600,
        seed: int = 0,
        host: str = LOCALHOST,
    ) -> List[int]:
        """
        Claim count ports that are currently bindable.

        Args:
            count: Number of ports
            strategy: "sequential" (from base_port upward) or "random" (seeded)
            base_port: Start of the sequential scan
            seed: Seed for the random strategy
            host: Host the ports must be bindable on

        Raises:
            CapacityError: If not enough free ports were found
        """
        with cls._lock:
            ports: List[int] = []
            if strategy == "random":
                rng = random.Random(seed)
                attempts = 0
                while len(ports) < count and attempts < count * 200:
                    attempts += 1
                    port = rng.randrange(*RANDOM_PORT_RANGE)
                    if port in cls._claimed or port in ports:
                        continue
                    if port_is_free(port, host):
                        ports.append(port)
            else:
                port = base_port
                while len(ports) < count and port < 65535:
                    if port not in cls._claimed and port_is_free(port, host):
                        ports.append(port)
                    port += 1
            if len(ports) < count:
                raise CapacityError(f"could only find {len(ports)} of {count} free ports")
            cls._claimed.update(ports)
            return ports

    @classmethod
    def release(cls, ports: Sequence[int]) -> None:
        with cls._lock:
            cls._claimed.difference_update(ports)

    @classmethod
    def claimed(cls) -> Set[int]:
        with cls._lock:
            return set(cls._claimed)


# ============================================================================
# TOPOLOGY BUILDER
# ============================================================================

def default_roles(node_count: int, validators: int = 1) -> List[Role]:
    """First `validators` nodes validate, the rest are full nodes."""
    if validators < 1:
        raise ValueError("A network needs at least one validator")
    return [Role.VALIDATOR if i < validators else Role.FULL for i in range(node_count)]


def _node_ids(roles: Sequence[Role]) -> List[str]:
    counters: Dict[Role, int] = {}
    ids = []
    for role in roles:
        index = counters.get(role, 0)
        counters[role] = index + 1
        ids.append(f"{role.value}-{index}")
    return ids


class TopologyBuilder:
    """
    Builds a NetworkConfig and its on-disk artifacts inside a RunContext.

    Example:
        with RunContext(settings, name="transfer") as ctx:
            config = TopologyBuilder(ctx).build(4, default_roles(4, validators=1))
            config.genesis.validator_map   # {"validator-0": Decimal("1000")}
    """

    def __init__(self, ctx: RunContext):
        self.ctx = ctx
        self.settings = ctx.settings
        self.log = ctx.log.bind(component="topology")

    def build(
        self,
        node_count: int,
        roles: Optional[Sequence[Role]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> NetworkConfig:
        """
        Allocate ports, write genesis and node configs, return the NetworkConfig.

        Args:
            node_count: Number of nodes
            roles: One Role per node (default: one validator, rest full nodes)
            overrides: Genesis/port overrides, see OVERRIDE_KEYS

        Raises:
            CapacityError: If node_count exceeds settings.max_nodes or ports run out
            ValueError: On inconsistent roles or unknown override keys
        """
        if node_count < 1:
            raise ValueError("node_count must be at least 1")
        if node_count > self.settings.max_nodes:
            raise CapacityError(
                f"{node_count} nodes requested but max_nodes is {self.settings.max_nodes}"
            )
        overrides = dict(overrides or {})
        unknown = set(overrides) - OVERRIDE_KEYS
        if unknown:
            raise ValueError(f"Unknown topology overrides: {sorted(unknown)}")

        roles = list(roles) if roles is not None else default_roles(node_count)
        if len(roles) != node_count:
            raise ValueError(f"{len(roles)} roles given for {node_count} nodes")
        if Role.VALIDATOR not in roles:
            raise ValueError("At least one node must be a validator")

        node_ids = list(overrides.get("node_ids") or _node_ids(roles))
        if len(node_ids) != node_count:
            raise ValueError(f"{len(node_ids)} node ids given for {node_count} nodes")

        self.ctx.check_cancelled()
        ports = PortAllocator.allocate(
            node_count * PORTS_PER_NODE,
            strategy=overrides.get("port_strategy", self.settings.port_strategy),
            base_port=overrides.get("base_port", self.settings.base_port),
            seed=overrides.get("port_seed", self.settings.port_seed),
        )
        self.ctx.add_cleanup(lambda: PortAllocator.release(ports))

        base_dir = self.ctx.base_dir
        genesis = self._genesis(roles, node_ids, overrides, base_dir)

        descriptors = []
        for index, (node_id, role) in enumerate(zip(node_ids, roles)):
            command = self.settings.relayer if role == Role.RELAYER else self.settings.node_command
            descriptors.append(NodeDescriptor(
                node_id=node_id,
                role=role,
                p2p_port=ports[index * PORTS_PER_NODE],
                rpc_port=ports[index * PORTS_PER_NODE + 1],
                data_dir=base_dir / node_id,
                command=tuple(command),
            ))

        config = NetworkConfig(
            run_id=self.ctx.run_id,
            base_dir=base_dir,
            nodes=tuple(descriptors),
            genesis=genesis,
        )
        self.write(config)
        self.log.info("topology_built", nodes=node_count, chain_id=genesis.chain_id,
                      validators=len(genesis.validators), ports=config.all_ports())
        return config

    def _genesis(
        self,
        roles: Sequence[Role],
        node_ids: Sequence[str],
        overrides: Mapping[str, Any],
        base_dir: Path,
    ) -> GenesisParams:
        validator_ids = [n for n, r in zip(node_ids, roles) if r == Role.VALIDATOR]
        stakes = overrides.get("validator_stakes") or {}
        validators = {v: to_amount(stakes.get(v, DEFAULT_VALIDATOR_STAKE)) for v in validator_ids}

        balances = {k: to_amount(v) for k, v in (overrides.get("balances") or DEFAULT_ACCOUNTS).items()}
        validator_balance = to_amount(overrides.get("validator_balance", DEFAULT_VALIDATOR_BALANCE))
        for v in validator_ids:
            balances.setdefault(v, validator_balance)

        wasm: Dict[str, str] = {}
        if overrides.get("wasm"):
            catalog = WasmCatalog(self.settings.wasm_dir)
            wasm = catalog.install(overrides["wasm"], base_dir / "wasm")

        chain_id = overrides.get("chain_id") or (
            "e2e-test." + hashlib.sha256(self.ctx.run_id.encode()).hexdigest()[:12]
        )
        params: Dict[str, Any] = {}
        for key in ("epoch_blocks", "block_time", "unbonding_len"):
            if key in overrides:
                params[key] = overrides[key]
        if "min_proposal_deposit" in overrides:
            params["min_proposal_deposit"] = to_amount(overrides["min_proposal_deposit"])

        return GenesisParams.create(
            chain_id=chain_id,
            balances=balances,
            validators=validators,
            wasm=tuple(sorted(wasm.items())),
            **params,
        )

    def write(self, config: NetworkConfig) -> None:
        """Write genesis.json and every node's config.json."""
        config.base_dir.mkdir(parents=True, exist_ok=True)
        with open(config.genesis_path, "w") as f:
            json.dump(config.genesis.to_dict(), f, indent=2, sort_keys=True)

        validator_rpc = [n.rpc_address for n in config.by_role(Role.VALIDATOR)]
        for node in config.nodes:
            node.data_dir.mkdir(parents=True, exist_ok=True)
            node_config = {
                "node_id": node.node_id,
                "role": node.role.value,
                "chain_id": config.genesis.chain_id,
                "genesis_path": str(config.genesis_path),
                "p2p_address": node.p2p_address,
                "rpc_address": node.rpc_address,
                "peers": [n.p2p_address for n in config.nodes if n.node_id != node.node_id],
                "validator_rpc": validator_rpc,
            }
            with open(node.data_dir / "config.json", "w") as f:
                json.dump(node_config, f, indent=2, sort_keys=True)
