"""
test_network_scenarios.py - End-to-end scenarios against a local network

Every test launches real node processes (tests/fake_node.py) and drives
them through the client CLI.

Tests:
- Transfer on a 4-node network, observed on every node
- Insufficient balance: rejected, state unchanged
- Bond/unbond, unbond then withdraw after maturity, governance, validity predicates
- Clients returning before block inclusion: outcome taken from the receipt
- Injected node defect surfaces as a ModelMismatch
- Crash mid-scenario: no surviving processes, run directory removed
- Node restart rejoins the chain
"""

from decimal import Decimal

import pytest

from ledger_harness import (
    EpochAtLeast, LocalNetwork, ModelMismatch, PreconditionFailed, QueryKind, RunContext, Scenario,
    ScenarioResult, Transfer, Unbond, Withdraw, registered_nodes, run,
)
from ledger_harness import cli


class TestBuiltinScenarios:

    def test_transfer_on_four_nodes(self, settings):
        result = run("transfer", settings, amount=10)
        assert result.passed, result.summary()
        assert len(result.command_log) == 1
        assert result.command_log[0].startswith("transfer")
        assert registered_nodes(result.run_id) == []

    def test_transfer_insufficient_balance(self, settings):
        result = run("transfer_insufficient_balance", settings)
        assert result.passed, result.summary()
        assert any(r.detail.startswith("rejected") for r in result.steps)

    def test_bond_and_unbond(self, settings):
        result = run("bond_and_unbond", settings)
        assert result.passed, result.summary()

    def test_unbond_and_withdraw(self, settings):
        result = run("unbond_and_withdraw", settings, amount=100)
        assert result.passed, result.summary()
        assert [c.split()[0] for c in result.command_log] == ["bond", "unbond", "withdraw"]

    def test_insufficient_balance_with_asynchronous_client(self, settings, monkeypatch):
        monkeypatch.setenv("FAKE_CLIENT_ASYNC", "1")
        result = run("transfer_insufficient_balance", settings)
        assert result.passed, result.summary()
        [rejected] = [r for r in result.steps if r.detail.startswith("rejected")]
        assert "insufficient balance" in rejected.detail

    def test_governance_proposal(self, settings):
        result = run("governance_proposal", settings)
        assert result.passed, result.summary()
        assert result.command_log[0].startswith("init-proposal")

    def test_vp_always_false(self, settings):
        result = run("vp_always_false_rejects", settings)
        assert result.passed, result.summary()


class TestScenarioHandle:

    def test_injected_defect_is_a_mismatch(self, ctx, monkeypatch):
        monkeypatch.setenv("FAKE_NODE_BUG", "lossy_transfer")
        scenario = Scenario(ctx, ScenarioResult(name="defect", run_id=ctx.run_id, seed=0))
        scenario.start_network(1)
        with pytest.raises(ModelMismatch) as excinfo:
            scenario.apply(Transfer("albert", "bertha", Decimal(10)))
        [discrepancy] = excinfo.value.discrepancies
        assert discrepancy["field"] == "balance"
        assert discrepancy["key"] == "bertha"
        assert discrepancy["actual"] == discrepancy["expected"] - 1
        assert scenario.result.steps[-1].passed is False

    def test_mismatch_run_reports_failure(self, settings, monkeypatch):
        monkeypatch.setenv("FAKE_NODE_BUG", "lossy_transfer")
        result = run("transfer", settings, amount=10, full_nodes=0)
        assert not result.passed
        assert result.mismatch is not None
        assert "balance[bertha]" in result.error


class TestLifecycle:

    def test_crash_mid_scenario_cleans_up(self, settings):
        ctx = RunContext(settings, name="crash")
        network = LocalNetwork.start(ctx, node_count=3)
        run_dir = ctx.base_dir
        with pytest.raises(ZeroDivisionError):
            with ctx:
                network.submit(network.leader, cli.transfer("albert", "bertha", 1))
                1 / 0
        assert registered_nodes(ctx.run_id) == []
        assert all(not n.is_alive() for n in network.nodes.values())
        assert not run_dir.exists()

    def test_restart_rejoins(self, ctx):
        network = LocalNetwork.start(ctx, node_count=2)
        height = network.wait_height(2)
        node = network.restart_node("full-0", ready_height=height + 1)
        assert node.is_alive()
        assert network.cli.height(node) > height

    def test_submit_confirms_on_followers(self, ctx):
        network = LocalNetwork.start(ctx, node_count=3)
        before = network.cli.query(network.leader, QueryKind.BALANCE, owner="christel")
        result = network.submit(network.leader, cli.transfer("albert", "christel", 5),
                                confirm_on=network.full_nodes)
        for node in network.full_nodes:
            receipt = network.cli.query(node, QueryKind.TX_RESULT, tx_hash=result.tx_hash)
            assert receipt.applied
            assert network.cli.query(node, QueryKind.BALANCE, owner="christel") == before + 5

    def test_withdraw_after_unbond_matures(self, ctx):
        scenario = Scenario(ctx, ScenarioResult(name="withdraw", run_id=ctx.run_id, seed=0))
        network = scenario.start_network(1, overrides={"epoch_blocks": 10, "unbonding_len": 2})
        scenario.apply(Unbond("validator-0", "validator-0", Decimal(10)))
        [(_, _, matures)] = scenario.state.unbonds
        with pytest.raises(PreconditionFailed):
            scenario.apply(Withdraw("validator-0", "validator-0"))
        scenario.sync.await_condition(network.leader, EpochAtLeast(matures))
        scenario.apply(Withdraw("validator-0", "validator-0"))
        assert scenario.state.unbonds == {}
        assert scenario.state.balance("validator-0") == Decimal(10010)
