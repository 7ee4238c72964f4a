"""
test_cli.py - Unit tests for the CLI Driver

Tests:
- Output parsers for every query kind
- Command builders
- Outcome classification against a live fake node: applied, rejected,
  expected rejection, harness errors, timeouts, cancellation
- Receipt confirmation, including clients that return before block inclusion
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from ledger_harness import (
    CliDriver, Command, CommandHarnessError, CommandRejected, CommandResult, Expect, LocalNetwork,
    ObservationKeys, Outcome, QueryKind, ScenarioCancelled,
)
from ledger_harness import cli
from ledger_harness.cli import (
    parse_balance, parse_block, parse_bonds, parse_epoch, parse_proposal, parse_tx_result,
    parse_validator_set, TxReceipt,
)


class TestParsers:

    def test_balance(self):
        assert parse_balance("nam: 1000010\n") == Decimal("1000010")
        assert parse_balance("NAM: 1,250.5") == Decimal("1250.5")

    def test_balance_not_found_is_zero(self):
        assert parse_balance("No nam balance found for dora") == Decimal("0")

    def test_balance_garbage(self):
        with pytest.raises(CommandHarnessError, match="no NAM balance"):
            parse_balance("thread 'main' panicked")

    def test_bonds(self):
        assert parse_bonds("Bonds total: 150") == Decimal("150")
        assert parse_bonds("No bonds found") == Decimal("0")

    def test_validator_set_stops_at_next_section(self):
        output = ("Consensus validators:\n  validator-0: 1100\n  validator-1: 1000\n"
                  "Below-capacity validators:\n  validator-2: 1\n")
        assert parse_validator_set(output) == {"validator-0": Decimal("1100"), "validator-1": Decimal("1000")}

    def test_validator_set_missing(self):
        with pytest.raises(CommandHarnessError):
            parse_validator_set("nothing here")

    def test_proposal(self):
        info = parse_proposal("Proposal Id: 0\nAuthor: albert\nStatus: on-going\nVotes: 2\n")
        assert (info.proposal_id, info.author, info.status, info.votes) == (0, "albert", "on-going", 2)
        assert parse_proposal("Proposal 4 not found") is None

    def test_block(self):
        block = parse_block("Last committed block ID: 0AB1, height: 12, time: 2026-01-01T00:00:00Z")
        assert block.height == 12
        assert block.block_hash == "0AB1"
        assert parse_block("No block has been committed yet") is None

    def test_epoch(self):
        assert parse_epoch("Last committed epoch: 3") == 3
        with pytest.raises(CommandHarnessError):
            parse_epoch("")

    def test_tx_result(self):
        receipt = parse_tx_result(
            'Transaction was applied with result: {"height": 7, "is_accepted": false, "info": "nope"}', "AB")
        assert receipt.height == 7
        assert not receipt.applied
        assert receipt.info == "nope"
        assert parse_tx_result("No result found for transaction AB", "AB") is None


class TestBuilders:

    def test_transactions_submit(self):
        for command in (cli.transfer("a", "b", 1), cli.bond("a", "v", 1), cli.unbond("a", "v", 1),
                        cli.withdraw("a", "v"), cli.init_proposal("a"), cli.vote_proposal(0, "v", "yay"),
                        cli.custom_tx("/w/tx_no_op.wasm", "a"), cli.update_account("a", "/w/vp.wasm")):
            assert command.submits_tx, command

    def test_queries_do_not_submit(self):
        for kind in QueryKind:
            args = {"owner": "a", "validator": "v", "proposal_id": 0, "tx_hash": "AB"}
            command = cli.query_command(kind, **args)
            assert not command.submits_tx
            assert command.subcommand == kind.value

    def test_bond_rendering(self):
        assert cli.bond("albert", "validator-0", Decimal("5.0")).render() == \
            "bond --validator validator-0 --source albert --amount 5"


@pytest.fixture
def network(ctx):
    return LocalNetwork.start(ctx, node_count=1)


class TestExecute:

    def test_query_balance(self, network):
        assert network.cli.query(network.leader, QueryKind.BALANCE, owner="albert") == Decimal("1000000")
        assert network.cli.query(network.leader, QueryKind.BALANCE, owner="nobody") == Decimal("0")

    def test_height_and_epoch(self, network):
        assert network.cli.height(network.leader) >= 1
        assert network.cli.epoch(network.leader) >= 0

    def test_transfer_applied(self, network):
        result = network.cli.execute(network.leader, cli.transfer("albert", "bertha", 10))
        assert result.outcome == Outcome.APPLIED
        assert result.exit_code == 0
        assert result.tx_hash
        assert result.height >= 1
        assert network.cli.query(network.leader, QueryKind.BALANCE, owner="bertha") == Decimal("1000010")

    def test_insufficient_balance_rejected(self, network):
        with pytest.raises(CommandRejected) as excinfo:
            network.cli.execute(network.leader, cli.transfer("albert", "bertha", 2_000_000))
        assert excinfo.value.result.outcome == Outcome.REJECTED
        assert "is lower than the amount to be transferred" in excinfo.value.result.stderr

    def test_expected_rejection_is_returned(self, network):
        result = network.cli.expect_rejection(network.leader, cli.transfer("albert", "bertha", 2_000_000),
                                              pattern="lower than")
        assert result.outcome == Outcome.REJECTED

    def test_expected_rejection_but_applied(self, network):
        with pytest.raises(CommandHarnessError, match="expected a rejection"):
            network.cli.expect_rejection(network.leader, cli.transfer("albert", "bertha", 1))

    def test_protocol_rejection_from_block(self, network):
        # Client pre-checks pass, the block rejects the unbond.
        with pytest.raises(CommandRejected, match="Transaction is invalid"):
            network.cli.execute(network.leader, cli.unbond("albert", "validator-0", 5))

    def test_unexpected_exit_code(self, network):
        with pytest.raises(CommandHarnessError, match="exited with 2"):
            network.cli.execute(network.leader, Command.build("bogus"))

    def test_output_mismatch(self, network):
        with pytest.raises(CommandHarnessError, match="does not match expectation"):
            network.cli.execute(network.leader, Command.build("epoch", expect=Expect.text("Last committed epoch: 999")))

    def test_timeout_kills_client(self, network):
        with pytest.raises(CommandHarnessError, match="timed out"):
            network.cli.execute(network.leader, Command.build("epoch", timeout=0.001))

    def test_dead_node(self, network):
        network.kill_node(network.leader.node_id)
        with pytest.raises(CommandHarnessError, match="node exited"):
            network.cli.execute(network.leader, cli.query_command(QueryKind.EPOCH))

    def test_cancelled(self, ctx, network):
        ctx.cancel("test")
        with pytest.raises(ScenarioCancelled):
            network.cli.execute(network.leader, cli.query_command(QueryKind.EPOCH))

    def test_observe_state(self, network):
        observed = network.cli.observe_state(network.leader, ObservationKeys(
            accounts=("albert",), bonds=(("validator-0", "validator-0"),), validator_set=True, proposals=(0,),
        ))
        assert observed.balances == {"albert": Decimal("1000000")}
        assert observed.bonds == {("validator-0", "validator-0"): Decimal("1000")}
        assert observed.validator_set == {"validator-0": Decimal("1000")}
        assert observed.proposals == {0: None}

    def test_rejection_patterns_from_settings(self, ctx):
        driver = CliDriver(ctx)
        assert driver.is_rejection("Transaction was rejected by VPs: x")
        assert not driver.is_rejection("Transaction is valid.")


class TestConfirm:

    @pytest.fixture
    def driver(self, ctx):
        return CliDriver(ctx)

    def _submitted(self, command):
        return CommandResult(
            command=command, node_id="validator-0", argv=command.argv(), exit_code=0,
            stdout="Transaction hash: AB12\n", stderr="", duration=0.1, outcome=Outcome.APPLIED,
            tx_hash="AB12", height=None,
        )

    def test_applied_receipt_sets_height(self, driver):
        result = self._submitted(cli.transfer("albert", "bertha", 1))
        node = SimpleNamespace(node_id="validator-0")
        confirmed = driver.confirm(node, result, TxReceipt("AB12", True, height=7))
        assert confirmed.outcome == Outcome.APPLIED
        assert confirmed.height == 7

    def test_rejected_receipt_raises(self, driver):
        result = self._submitted(cli.transfer("albert", "bertha", 1))
        node = SimpleNamespace(node_id="validator-0")
        with pytest.raises(CommandRejected) as excinfo:
            driver.confirm(node, result, TxReceipt("AB12", False, height=9, info="insufficient balance"))
        rejected = excinfo.value.result
        assert rejected.outcome == Outcome.REJECTED
        assert rejected.height == 9
        assert "rejected in block 9: insufficient balance" in rejected.stderr

    def test_receipt_applying_an_expected_rejection(self, driver):
        command = cli.transfer("albert", "bertha", 1).with_expect(Expect.rejected())
        result = self._submitted(command)
        node = SimpleNamespace(node_id="validator-0")
        with pytest.raises(CommandHarnessError, match="block 3 applied it"):
            driver.confirm(node, result, TxReceipt("AB12", True, height=3))


class TestAsynchronousClient:

    @pytest.fixture(autouse=True)
    def asynchronous(self, monkeypatch):
        monkeypatch.setenv("FAKE_CLIENT_ASYNC", "1")

    def test_client_returns_before_inclusion(self, network):
        result = network.cli.execute(network.leader, cli.transfer("albert", "bertha", 10))
        assert result.outcome == Outcome.APPLIED
        assert result.tx_hash
        assert result.height is None

    def test_submit_confirms_by_receipt(self, network):
        result = network.submit(network.leader, cli.transfer("albert", "bertha", 10))
        assert result.outcome == Outcome.APPLIED
        assert result.height >= 1
        assert network.cli.query(network.leader, QueryKind.BALANCE, owner="bertha") == Decimal("1000010")

    def test_block_rejection_is_command_rejected(self, network):
        with pytest.raises(CommandRejected, match="rejected in block") as excinfo:
            network.submit(network.leader, cli.transfer("albert", "bertha", 2_000_000))
        assert "insufficient balance" in excinfo.value.result.stderr
        assert network.cli.query(network.leader, QueryKind.BALANCE, owner="albert") == Decimal("1000000")
