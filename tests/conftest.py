"""
conftest.py - Shared pytest fixtures for harness tests

Provides:
- Harness settings wired to the fake node/client (tests/fake_node.py)
- A directory of opaque wasm test artifacts
- Run contexts that are always torn down
- Genesis parameters for model and engine tests
- Executor factories over the in-memory SimulatedLedger
- A check that no test leaks node processes
"""

import sys
from pathlib import Path
from typing import Optional

import pytest

from ledger_harness import (
    GenesisParams, HarnessSettings, LoggingConfig, RunContext, configure_logging, registered_nodes,
)
from ledger_harness.wasm import KNOWN_ARTIFACTS

from simulated_ledger import SimulatedLedger

FAKE_NODE = str(Path(__file__).parent / "fake_node.py")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def build_settings(tmp_path: Path, wasm_dir: Optional[Path] = None, **overrides) -> HarnessSettings:
    """Settings pointing at the fake binaries with short timeouts."""
    values = dict(
        node_command=[sys.executable, FAKE_NODE],
        client_command=[sys.executable, FAKE_NODE, "client"],
        wasm_dir=wasm_dir,
        work_dir=tmp_path / "runs",
        poll_interval=0.05,
        sync_timeout=20.0,
        startup_timeout=30.0,
        command_timeout=30.0,
        kill_grace_period=2.0,
        port_strategy="random",
        port_seed=1234,
        keep_on_failure=False,
    )
    values.update(overrides)
    return HarnessSettings(**values)


def build_genesis(validators: int = 1, **kwargs) -> GenesisParams:
    """Genesis with the default accounts and `validators` validators of stake 1000."""
    balances = {"albert": 1_000_000, "bertha": 1_000_000, "christel": 1_000_000}
    stakes = {f"validator-{i}": 1_000 for i in range(validators)}
    for v in stakes:
        balances[v] = 10_000
    return GenesisParams.create("test-chain", balances, stakes, **kwargs)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def harness_logging():
    configure_logging(LoggingConfig(level="INFO"))


@pytest.fixture(scope="session")
def wasm_dir(tmp_path_factory) -> Path:
    """Directory with one opaque .wasm blob per known test artifact."""
    path = tmp_path_factory.mktemp("wasm")
    for name in KNOWN_ARTIFACTS:
        (path / f"{name}.wasm").write_bytes(b"\x00asm\x01\x00\x00\x00" + name.encode())
    return path


@pytest.fixture
def make_settings(tmp_path, wasm_dir):
    """Build settings for this test's tmp_path with keyword overrides."""
    def make(**overrides) -> HarnessSettings:
        return build_settings(tmp_path, wasm_dir, **overrides)
    return make


@pytest.fixture
def settings(make_settings) -> HarnessSettings:
    return make_settings()


@pytest.fixture
def ctx(settings):
    context = RunContext(settings, name="test")
    yield context
    context.close()


@pytest.fixture(scope="session")
def make_genesis():
    return build_genesis


@pytest.fixture
def genesis() -> GenesisParams:
    return build_genesis(validators=3)


@pytest.fixture
def simulated_factory(genesis):
    """Build a SimulatedLedger executor factory over the 3-validator genesis."""
    def make(**kwargs):
        return SimulatedLedger.factory(genesis, **kwargs)
    return make


@pytest.fixture(autouse=True)
def no_leaked_processes():
    """Every test must leave the process registry empty."""
    yield
    leaked = registered_nodes()
    assert not leaked, f"leaked node processes: {leaked}"
