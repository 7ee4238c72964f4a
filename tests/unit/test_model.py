"""
test_model.py - Unit tests for the State-Machine Model

Tests:
- Genesis state and derived values
- Each action: precondition, successor state, command
- Candidate generation: finite, sorted, duplicate-free, all valid,
  grouped by kind, leaving liquidity on bonds and proposals
- Properties (hypothesis): supply conservation, non-negativity,
  purity, determinism and a transfer always being
  available over random walks
- diff(): exact balances/bonds, validator set by name, proposals by author
"""

import dataclasses
import random
from decimal import Decimal

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from ledger_harness import (
    Bond, Model, ModelState, ObservedState, PreconditionFailed, SubmitProposal, SupplyNotConserved,
    Transfer, Unbond, VoteProposal, Withdraw,
)
from ledger_harness.cli import ProposalInfo
from ledger_harness.model import LIQUIDITY_FLOOR, TRANSITIONS, amount_ladder, to_actions

ALL_KINDS = tuple(TRANSITIONS)


def _random_walk(model: Model, seed: int, steps: int):
    """Apply `steps` random candidates, advancing the epoch every third step."""
    rng = random.Random(seed)
    state = model.initial
    states = [state]
    for step in range(steps):
        state = state.at_epoch(step // 3)
        candidates = model.generate_candidates(state)
        if not candidates:
            break
        state = model.apply(state, rng.choice(candidates))
        states.append(state)
    return states


class TestModelState:

    def test_from_genesis(self, genesis):
        state = ModelState.from_genesis(genesis)
        assert state.validators == ("validator-0", "validator-1", "validator-2")
        assert state.bond("validator-1", "validator-1") == Decimal("1000")
        assert state.balance("albert") == Decimal("1000000")
        assert state.validator_set() == {f"validator-{i}": Decimal("1000") for i in range(3)}
        assert state.total_supply() == genesis.total_supply()

    def test_epoch_never_goes_back(self, genesis):
        state = ModelState.from_genesis(genesis).at_epoch(3)
        assert state.at_epoch(3) is state
        with pytest.raises(ValueError, match="backwards"):
            state.at_epoch(2)

    def test_all_keys(self, genesis):
        keys = ModelState.from_genesis(genesis).all_keys()
        assert "albert" in keys.accounts
        assert ("validator-0", "validator-0") in keys.bonds
        assert keys.validator_set

    def test_amount_ladder(self):
        assert amount_ladder(Decimal("1000")) == [Decimal(1), Decimal(500), Decimal(1000)]
        assert amount_ladder(Decimal("1")) == [Decimal(1)]
        assert amount_ladder(Decimal("0.5")) == []


class TestActions:

    @pytest.fixture
    def model(self, genesis):
        return Model(genesis, kinds=ALL_KINDS)

    def test_transfer(self, model):
        state = model.apply(model.initial, Transfer("albert", "bertha", Decimal(10)))
        assert state.balance("albert") == Decimal(999990)
        assert state.balance("bertha") == Decimal(1000010)

    def test_transfer_to_new_account(self, model):
        state = model.apply(model.initial, Transfer("albert", "dora", Decimal(10)))
        assert "dora" in state.accounts

    def test_transfer_precondition(self, model):
        with pytest.raises(PreconditionFailed, match="lower than"):
            model.apply(model.initial, Transfer("albert", "bertha", Decimal(1_000_001)))
        assert Transfer("albert", "albert", Decimal(1)).check(model.initial) is not None

    def test_apply_is_pure(self, model):
        before = model.initial.balances.copy()
        model.apply(model.initial, Transfer("albert", "bertha", Decimal(10)))
        assert model.initial.balances == before

    def test_bond_and_unbond(self, model):
        state = model.apply(model.initial, Bond("albert", "validator-0", Decimal(100)))
        assert state.stake("validator-0") == Decimal(1100)
        state = model.apply(state, Unbond("albert", "validator-0", Decimal(40)))
        assert state.bond("albert", "validator-0") == Decimal(60)
        assert state.unbonds == {("albert", "validator-0", 2): Decimal(40)}

    def test_bond_to_unknown_validator(self, model):
        assert "not a validator" in Bond("albert", "dora", Decimal(1)).check(model.initial)

    def test_unbond_cannot_empty_validator(self, model):
        reason = Unbond("validator-0", "validator-0", Decimal(1000)).check(model.initial)
        assert "without stake" in reason

    def test_withdraw_needs_matured_unbond(self, model):
        state = model.apply(model.initial, Unbond("validator-0", "validator-0", Decimal(10)))
        assert Withdraw("validator-0", "validator-0").check(state) is not None
        state = model.apply(state.at_epoch(2), Withdraw("validator-0", "validator-0"))
        assert state.balance("validator-0") == Decimal(10010)
        assert state.unbonds == {}

    def test_proposal_and_vote(self, model):
        state = model.apply(model.initial, SubmitProposal("albert"))
        assert state.proposals[0].author == "albert"
        assert state.escrow() == Decimal(50)
        assert state.next_proposal_id == 1
        state = model.apply(state, VoteProposal(0, "validator-0"))
        assert state.proposals[0].voters == ["validator-0"]
        assert "already voted" in VoteProposal(0, "validator-0", "nay").check(state)
        assert "no bonded stake" in VoteProposal(0, "albert").check(state)
        assert "no proposal" in VoteProposal(5, "validator-0").check(state)

    def test_to_command(self):
        assert Transfer("albert", "bertha", Decimal(10)).to_command().render() == \
            "transfer --source albert --target bertha --token NAM --amount 10"
        assert VoteProposal(0, "v", "nay").to_command().render() == \
            "vote-proposal --proposal-id 0 --vote nay --voter v"

    def test_undeclared_supply_change_is_caught(self, model, monkeypatch):
        minting = dataclasses.replace(TRANSITIONS["transfer"], supply_delta=lambda s, a: Decimal(1))
        monkeypatch.setitem(TRANSITIONS, "transfer", minting)
        with pytest.raises(SupplyNotConserved, match="changed by 0, declared 1"):
            model.apply(model.initial, Transfer("albert", "bertha", Decimal(10)))

    def test_to_actions(self):
        actions = to_actions([("transfer", "albert", "bertha", 10), ("withdraw", "albert", "validator-0")])
        assert actions == [Transfer("albert", "bertha", Decimal(10)), Withdraw("albert", "validator-0")]


class TestCandidates:

    def test_sorted_unique_and_valid(self, genesis):
        model = Model(genesis, kinds=ALL_KINDS)
        state = model.apply(model.initial, SubmitProposal("albert"))
        candidates = model.generate_candidates(state)
        assert len(candidates) == len(set(candidates))
        assert list(candidates) == sorted(candidates, key=lambda a: a.sort_key())
        assert all(a.check(state) is None for a in candidates)
        assert {a.kind for a in candidates} == {"transfer", "bond", "unbond", "submit_proposal", "vote_proposal"}

    def test_kinds_filter(self, genesis):
        model = Model(genesis, kinds=("transfer",))
        assert {a.kind for a in model.generate_candidates(model.initial)} == {"transfer"}
        assert not model.uses_epoch
        assert Model(genesis, kinds=ALL_KINDS).uses_epoch

    def test_unknown_kind(self, genesis):
        with pytest.raises(ValueError, match="Unknown action kinds"):
            Model(genesis, kinds=("mint",))

    def test_grouped_by_kind(self, genesis):
        model = Model(genesis, kinds=("withdraw", "transfer", "unbond"))
        grouped = model.candidates_by_kind(model.initial)
        assert list(grouped) == ["transfer", "unbond"]
        assert all(a.kind == kind for kind, group in grouped.items() for a in group)
        flat = sorted((a for g in grouped.values() for a in g), key=lambda a: a.sort_key())
        assert list(model.generate_candidates(model.initial)) == flat

    def test_bonds_keep_liquidity(self, genesis):
        model = Model(genesis, kinds=("bond",))
        bonds = model.generate_candidates(model.initial)
        assert bonds
        assert all(model.initial.balance(b.source) - b.amount >= LIQUIDITY_FLOOR for b in bonds)
        assert Bond("albert", "validator-0", Decimal(1_000_000)) not in bonds

    def test_proposals_keep_liquidity(self, genesis):
        deposit = genesis.min_proposal_deposit
        model = Model(genesis, kinds=("transfer", "submit_proposal"))
        state = model.apply(model.initial, Transfer("albert", "bertha", Decimal(1_000_000) - deposit))
        authors = {a.author for a in model.candidates_by_kind(state)["submit_proposal"]}
        assert "albert" not in authors
        assert "bertha" in authors


class TestModelProperties:

    @given(st.integers(min_value=0, max_value=2**32), st.integers(min_value=1, max_value=40))
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_supply_is_conserved(self, make_genesis, seed, steps):
        model = Model(make_genesis(validators=2), kinds=ALL_KINDS)
        states = _random_walk(model, seed, steps)
        assert {s.total_supply() for s in states} == {model.initial.total_supply()}

    @given(st.integers(min_value=0, max_value=2**32), st.integers(min_value=1, max_value=40))
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_preconditions_keep_state_sound(self, make_genesis, seed, steps):
        model = Model(make_genesis(validators=2), kinds=ALL_KINDS)
        for state in _random_walk(model, seed, steps):
            assert all(v >= 0 for v in state.balances.values())
            assert all(v >= 0 for v in state.bonds.values())
            assert set(state.validator_set()) == set(state.validators)

    @given(st.integers(min_value=0, max_value=2**32), st.integers(min_value=1, max_value=60))
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_transfer_always_available(self, make_genesis, seed, steps):
        model = Model(make_genesis(validators=2), kinds=ALL_KINDS)
        for state in _random_walk(model, seed, steps):
            assert "transfer" in model.candidates_by_kind(state)

    @given(st.integers(min_value=0, max_value=2**32))
    @settings(max_examples=20, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_walk_is_deterministic(self, make_genesis, seed):
        model = Model(make_genesis(validators=2), kinds=ALL_KINDS)
        assert _random_walk(model, seed, 25) == _random_walk(model, seed, 25)


class TestDiff:

    @pytest.fixture
    def model(self, genesis):
        return Model(genesis, kinds=ALL_KINDS)

    def test_agreement(self, model):
        observed = ObservedState("n", balances={"albert": Decimal(1000000), "dora": Decimal(0)})
        assert model.diff(observed, model.initial) == []
        assert model.check(observed, model.initial)

    def test_balance_and_bond_mismatch(self, model):
        observed = ObservedState("n", balances={"albert": Decimal(5)},
                                 bonds={("albert", "validator-0"): Decimal(1)})
        fields = [d["field"] for d in model.diff(observed, model.initial)]
        assert fields == ["balance", "bond"]

    def test_validator_set_compared_by_name(self, model):
        powers = {f"validator-{i}": Decimal(1) for i in range(3)}
        assert model.diff(ObservedState("n", validator_set=powers), model.initial) == []
        del powers["validator-2"]
        [d] = model.diff(ObservedState("n", validator_set=powers), model.initial)
        assert d["field"] == "validator_set"

    def test_proposal_author(self, model):
        state = model.apply(model.initial, SubmitProposal("albert"))
        good = ObservedState("n", proposals={0: ProposalInfo(0, "albert", "on-going")})
        missing = ObservedState("n", proposals={0: None})
        assert model.diff(good, state) == []
        [d] = model.diff(missing, state)
        assert (d["expected"], d["actual"]) == ("albert", None)
