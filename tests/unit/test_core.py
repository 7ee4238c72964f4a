"""
test_core.py - Unit tests for core data structures

Tests:
- NodeDescriptor: validation, addresses, immutability
- GenesisParams: creation, validation, supply, serialization
- NetworkConfig: port and id uniqueness, validator requirement
- Expect / Command / CommandResult: building, rendering, matching
- Exceptions: SyncTimeoutError diagnosis, ModelMismatch message
"""

from decimal import Decimal
from pathlib import Path

import pytest

from ledger_harness import (
    Command, CommandResult, Expect, GenesisParams, ModelMismatch, NetworkConfig, NodeDescriptor,
    Outcome, Role, SyncTimeoutError,
)
from ledger_harness.core import format_amount, to_amount


def _node(node_id="validator-0", role=Role.VALIDATOR, p2p=30000, rpc=30001):
    return NodeDescriptor(node_id, role, p2p, rpc, Path("/tmp") / node_id, ("namadan",))


def _genesis(**kwargs):
    return GenesisParams.create("chain", {"albert": 100}, {"validator-0": 10}, **kwargs)


class TestAmounts:

    def test_to_amount_float_goes_through_str(self):
        assert to_amount(0.1) == Decimal("0.1")

    def test_to_amount_passes_decimal_through(self):
        value = Decimal("12.5")
        assert to_amount(value) is value

    def test_format_amount_strips_trailing_zeros(self):
        assert format_amount(Decimal("100.000")) == "100"
        assert format_amount(Decimal("1E+2")) == "100"
        assert format_amount(Decimal("2.50")) == "2.5"


class TestNodeDescriptor:

    def test_addresses(self):
        node = _node()
        assert node.rpc_address == "127.0.0.1:30001"
        assert node.p2p_address == "127.0.0.1:30000"
        assert node.ports == (30000, 30001)

    def test_empty_id_raises(self):
        with pytest.raises(ValueError, match="Node id cannot be empty"):
            _node(node_id="  ")

    def test_same_ports_raise(self):
        with pytest.raises(ValueError, match="reuses port"):
            _node(p2p=30000, rpc=30000)

    def test_is_frozen(self):
        node = _node()
        with pytest.raises(AttributeError):
            node.rpc_port = 1


class TestGenesisParams:

    def test_create_converts_amounts(self):
        genesis = _genesis()
        assert genesis.balance_map == {"albert": Decimal("100")}
        assert genesis.validator_map == {"validator-0": Decimal("10")}

    def test_accounts_include_validators(self):
        assert _genesis().accounts == ["albert", "validator-0"]

    def test_total_supply(self):
        assert _genesis().total_supply() == Decimal("110")

    def test_empty_validator_set_raises(self):
        with pytest.raises(ValueError, match="validator set cannot be empty"):
            GenesisParams.create("chain", {"albert": 1}, {})

    def test_non_positive_stake_raises(self):
        with pytest.raises(ValueError, match="positive stake"):
            GenesisParams.create("chain", {}, {"validator-0": 0})

    def test_negative_balance_raises(self):
        with pytest.raises(ValueError, match="negative balance"):
            GenesisParams.create("chain", {"albert": -1}, {"validator-0": 1})

    def test_to_dict_is_json_ready(self):
        data = _genesis(epoch_blocks=5).to_dict()
        assert data["balances"] == {"albert": "100"}
        assert data["parameters"]["epoch_blocks"] == 5
        assert data["parameters"]["min_proposal_deposit"] == "50"

    def test_hashable(self):
        assert hash(_genesis()) == hash(_genesis())


class TestNetworkConfig:

    def test_duplicate_ports_raise(self):
        with pytest.raises(ValueError, match="Port 30001 used by both"):
            NetworkConfig("r", Path("/tmp"), (_node(), _node("full-0", Role.FULL, 30002, 30001)), _genesis())

    def test_duplicate_ids_raise(self):
        with pytest.raises(ValueError, match="Duplicate node id"):
            NetworkConfig("r", Path("/tmp"), (_node(), _node(p2p=30002, rpc=30003)), _genesis())

    def test_requires_validator_node(self):
        with pytest.raises(ValueError, match="at least one validator"):
            NetworkConfig("r", Path("/tmp"), (_node("full-0", Role.FULL),), _genesis())

    def test_lookup(self):
        config = NetworkConfig("r", Path("/tmp"), (_node(), _node("full-0", Role.FULL, 30002, 30003)), _genesis())
        assert config.node("full-0").rpc_port == 30003
        assert [n.node_id for n in config.by_role(Role.FULL)] == ["full-0"]
        assert config.all_ports() == [30000, 30001, 30002, 30003]
        assert config.genesis_path == Path("/tmp/genesis.json")
        with pytest.raises(KeyError):
            config.node("missing")


class TestCommand:

    def test_build_renders_flags_in_order(self):
        cmd = Command.build("transfer", source="albert", target="bertha", token="NAM",
                            amount=Decimal("10.0"), submits_tx=True)
        assert cmd.render() == "transfer --source albert --target bertha --token NAM --amount 10"
        assert cmd.submits_tx

    def test_build_drops_none_and_false(self):
        cmd = Command.build("init-proposal", author="albert", data_path=None, force=False, dry_run=True)
        assert cmd.argv() == ("init-proposal", "--author", "albert", "--dry-run")

    def test_render_quotes(self):
        assert Command.build("tx", memo="a b").render() == "tx --memo 'a b'"

    def test_with_expect(self):
        cmd = Command.build("bond", amount=1).with_expect(Expect.rejected("lower"))
        assert cmd.expect.outcome == Outcome.REJECTED
        assert cmd.subcommand == "bond"

    def test_empty_subcommand_raises(self):
        with pytest.raises(ValueError):
            Command("")


class TestExpect:

    def test_pattern_searches_both_streams(self):
        assert Expect.success("lower than").matches_output("", "is lower than the amount")

    def test_exact(self):
        assert Expect.text("nam: 5").matches_output("nam: 5\n")
        assert not Expect.text("nam: 5").matches_output("nam: 6\n")

    def test_no_matcher_matches_anything(self):
        assert Expect().matches_output("anything")


class TestCommandResult:

    def _result(self, stdout="", stderr="", exit_code=0):
        cmd = Command.build("balance", owner="albert")
        return CommandResult(cmd, "validator-0", cmd.argv(), exit_code, stdout, stderr, 0.1, Outcome.APPLIED)

    def test_summary_prefers_stderr(self):
        assert self._result("out\nlast", "err line").summary() == "err line"

    def test_summary_falls_back_to_exit_code(self):
        assert self._result(exit_code=3).summary() == "exit code 3"

    def test_summary_truncates(self):
        assert len(self._result("x" * 500).summary(limit=50)) == 50


class TestExceptions:

    def test_sync_timeout_diagnosis_never_answered(self):
        err = SyncTimeoutError("full-0", "height >= 5", 1.0, 1.1)
        assert err.diagnosis == "node never answered"
        assert "height >= 5" in str(err)

    def test_sync_timeout_diagnosis_stalled_vs_slow(self):
        stalled = SyncTimeoutError("n", "c", 1.0, 1.0, first_observation=3, last_observation=3, polls=4)
        slow = SyncTimeoutError("n", "c", 1.0, 1.0, first_observation=3, last_observation=4, polls=4)
        assert stalled.diagnosis == "chain stalled"
        assert slow.diagnosis == "chain progressing but too slow"
        assert slow.progressed and not stalled.progressed

    def test_sync_timeout_exit_code_wins(self):
        err = SyncTimeoutError("n", "c", 1.0, 0.2, exit_code=3)
        assert err.diagnosis == "node exited with code 3"

    def test_model_mismatch_message_is_truncated(self):
        discrepancies = [{"field": "balance", "key": str(i), "expected": 1, "actual": 2} for i in range(7)]
        err = ModelMismatch(4, "transfer", discrepancies)
        assert err.step == 4
        assert "(+2 more)" in str(err)
