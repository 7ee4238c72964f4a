"""
model.py - State-Machine Model

Abstract reference model of ledger state used by the property-testing engine.

ModelState tracks:
    - balances:  account -> liquid native token amount
    - bonds:     (delegator, validator) -> bonded amount
    - unbonds:   (delegator, validator, withdraw_epoch) -> unbonding amount
    - proposals: proposal id -> ModelProposal (author, deposit, votes)
    - epoch:     last epoch synchronized from the network

Every action is an immutable value with:
    - check(state)    -> None when the precondition holds, else the reason
    - apply(state)    -> the successor state (pure, never mutates its input)
    - to_command()    -> the client Command that performs it
    - observation keys naming the state it touches

Supply invariant: every transition declares its supply_delta, and
Model.apply checks

    total_supply(after) - total_supply(before) == supply_delta

where total_supply() = sum(balances) + sum(bonds) + sum(unbonds) + escrow.
No built-in transition mints or burns, so every built-in delta is zero.

Liquidity floor: generated bonds and proposals always leave their source
at least one liquid token, so some transfer stays possible and a
generated sequence never runs out of actions.

Comparison with observed chain state (diff/check):
    - balances and bonds: exact, a missing key counts as zero
    - validator set: set equality of validators with positive stake
    - proposals: same author for every observed id
    - epoch and epoch-derived values (unbond maturity) are never compared
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import (
    Any, Callable, ClassVar, Dict, Iterator, List, Optional, Sequence, Tuple
)

from . import cli
from .cli import ObservationKeys, ObservedState
from .core import Command, GenesisParams, NATIVE_TOKEN, to_amount

ZERO = Decimal("0")

VOTES = ("yay", "nay")


# ============================================================================
# STATE
# ============================================================================

@dataclass(frozen=True, slots=True)
class ModelParams:
    """Protocol parameters the model needs, taken from genesis."""
    unbonding_len: int = 2
    min_proposal_deposit: Decimal = Decimal("50")
    token: str = NATIVE_TOKEN


@dataclass(frozen=True, slots=True)
class ModelProposal:
    proposal_id: int
    author: str
    deposit: Decimal
    votes: Tuple[Tuple[str, str], ...] = ()

    @property
    def voters(self) -> List[str]:
        return [voter for voter, _ in self.votes]


@dataclass(frozen=True)
class ModelState:
    """
    Immutable reference state.

    The mapping fields are never mutated after construction; transitions
    copy them (see ModelState.evolve).
    """
    balances: Dict[str, Decimal]
    bonds: Dict[Tuple[str, str], Decimal]
    validators: Tuple[str, ...]
    params: ModelParams = field(default_factory=ModelParams)
    unbonds: Dict[Tuple[str, str, int], Decimal] = field(default_factory=dict)
    proposals: Dict[int, ModelProposal] = field(default_factory=dict)
    next_proposal_id: int = 0
    epoch: int = 0

    @classmethod
    def from_genesis(cls, genesis: GenesisParams) -> ModelState:
        """Initial state: genesis balances, and one self-bond per genesis validator."""
        return cls(
            balances=genesis.balance_map,
            bonds={(v, v): stake for v, stake in genesis.validators},
            validators=tuple(sorted(genesis.validator_map)),
            params=ModelParams(
                unbonding_len=genesis.unbonding_len,
                min_proposal_deposit=genesis.min_proposal_deposit,
                token=genesis.token,
            ),
        )

    def evolve(self, **changes: Any) -> ModelState:
        return replace(self, **changes)

    def at_epoch(self, epoch: int) -> ModelState:
        """Synchronize the epoch with the network. Epochs never go backwards."""
        if epoch == self.epoch:
            return self
        if epoch < self.epoch:
            raise ValueError(f"epoch went backwards: {self.epoch} -> {epoch}")
        return self.evolve(epoch=epoch)

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def accounts(self) -> List[str]:
        """Every account holding (or having held) a balance, sorted."""
        return sorted(set(self.balances) | set(self.validators))

    def balance(self, account: str) -> Decimal:
        return self.balances.get(account, ZERO)

    def bond(self, delegator: str, validator: str) -> Decimal:
        return self.bonds.get((delegator, validator), ZERO)

    def stake(self, validator: str) -> Decimal:
        """Total stake bonded to a validator (its voting power)."""
        return sum((a for (_, v), a in self.bonds.items() if v == validator), ZERO)

    def validator_set(self) -> Dict[str, Decimal]:
        """Consensus validators: every validator with positive stake."""
        powers = {v: self.stake(v) for v in self.validators}
        return {v: p for v, p in powers.items() if p > 0}

    def delegations(self, delegator: str) -> Decimal:
        return sum((a for (d, _), a in self.bonds.items() if d == delegator), ZERO)

    def matured_unbonds(self, delegator: str, validator: str) -> Decimal:
        return sum(
            (a for (d, v, e), a in self.unbonds.items()
             if d == delegator and v == validator and e <= self.epoch),
            ZERO,
        )

    def escrow(self) -> Decimal:
        return sum((p.deposit for p in self.proposals.values()), ZERO)

    def total_supply(self) -> Decimal:
        return (sum(self.balances.values(), ZERO)
                + sum(self.bonds.values(), ZERO)
                + sum(self.unbonds.values(), ZERO)
                + self.escrow())

    def all_keys(self) -> ObservationKeys:
        """Observation keys covering every account, bond pair and proposal."""
        return ObservationKeys(
            accounts=tuple(self.accounts),
            bonds=tuple(sorted(self.bonds)),
            validator_set=True,
            proposals=tuple(sorted(self.proposals)),
        )


# ============================================================================
# ACTIONS
# ============================================================================

def amount_ladder(limit: Decimal) -> List[Decimal]:
    """
    Candidate amounts up to limit: 1, half (rounded down) and all of it.

    Amounts are whole tokens so every candidate renders identically on
    every run.
    """
    whole = Decimal(int(limit))
    if whole < 1:
        return []
    return sorted({Decimal(1), Decimal(int(whole / 2)) or Decimal(1), whole})


def _add(mapping: Dict[Any, Decimal], key: Any, delta: Decimal) -> Dict[Any, Decimal]:
    updated = dict(mapping)
    updated[key] = updated.get(key, ZERO) + delta
    return updated


class Action:
    """Base class of model actions."""

    kind: ClassVar[str] = "action"

    def check(self, state: ModelState) -> Optional[str]:
        raise NotImplementedError

    def apply(self, state: ModelState) -> ModelState:
        raise NotImplementedError

    def to_command(self) -> Command:
        raise NotImplementedError

    def keys(self, state: ModelState) -> ObservationKeys:
        return ObservationKeys()

    def sort_key(self) -> Tuple:
        raise NotImplementedError

    def describe(self) -> str:
        return self.to_command().render()


@dataclass(frozen=True, slots=True)
class Transfer(Action):
    kind: ClassVar[str] = "transfer"
    source: str
    target: str
    amount: Decimal

    def check(self, state: ModelState) -> Optional[str]:
        if self.source == self.target:
            return "source and target are the same account"
        if self.amount <= 0:
            return "amount must be positive"
        if state.balance(self.source) < self.amount:
            return f"balance of {self.source} ({state.balance(self.source)}) is lower than {self.amount}"
        return None

    def apply(self, state: ModelState) -> ModelState:
        balances = _add(state.balances, self.source, -self.amount)
        balances = _add(balances, self.target, self.amount)
        return state.evolve(balances=balances)

    def to_command(self) -> Command:
        return cli.transfer(self.source, self.target, self.amount)

    def keys(self, state: ModelState) -> ObservationKeys:
        return ObservationKeys(accounts=(self.source, self.target))

    def sort_key(self) -> Tuple:
        return (self.kind, self.source, self.target, self.amount)


@dataclass(frozen=True, slots=True)
class Bond(Action):
    kind: ClassVar[str] = "bond"
    source: str
    validator: str
    amount: Decimal

    def check(self, state: ModelState) -> Optional[str]:
        if self.validator not in state.validators:
            return f"{self.validator} is not a validator"
        if self.amount <= 0:
            return "amount must be positive"
        if state.balance(self.source) < self.amount:
            return f"balance of {self.source} ({state.balance(self.source)}) is lower than {self.amount}"
        return None

    def apply(self, state: ModelState) -> ModelState:
        return state.evolve(
            balances=_add(state.balances, self.source, -self.amount),
            bonds=_add(state.bonds, (self.source, self.validator), self.amount),
        )

    def to_command(self) -> Command:
        return cli.bond(self.source, self.validator, self.amount)

    def keys(self, state: ModelState) -> ObservationKeys:
        return ObservationKeys(accounts=(self.source,), bonds=((self.source, self.validator),),
                               validator_set=True)

    def sort_key(self) -> Tuple:
        return (self.kind, self.source, self.validator, self.amount)


@dataclass(frozen=True, slots=True)
class Unbond(Action):
    """Unbond stake; it becomes withdrawable unbonding_len epochs later."""
    kind: ClassVar[str] = "unbond"
    source: str
    validator: str
    amount: Decimal

    def check(self, state: ModelState) -> Optional[str]:
        if self.amount <= 0:
            return "amount must be positive"
        bonded = state.bond(self.source, self.validator)
        if bonded < self.amount:
            return f"bond of {self.source} to {self.validator} ({bonded}) is lower than {self.amount}"
        if state.stake(self.validator) - self.amount <= 0:
            return f"unbonding {self.amount} would leave {self.validator} without stake"
        return None

    def apply(self, state: ModelState) -> ModelState:
        withdraw_epoch = state.epoch + state.params.unbonding_len
        return state.evolve(
            bonds=_add(state.bonds, (self.source, self.validator), -self.amount),
            unbonds=_add(state.unbonds, (self.source, self.validator, withdraw_epoch), self.amount),
        )

    def to_command(self) -> Command:
        return cli.unbond(self.source, self.validator, self.amount)

    def keys(self, state: ModelState) -> ObservationKeys:
        return ObservationKeys(bonds=((self.source, self.validator),), validator_set=True)

    def sort_key(self) -> Tuple:
        return (self.kind, self.source, self.validator, self.amount)


@dataclass(frozen=True, slots=True)
class Withdraw(Action):
    """Withdraw every matured unbond of source from validator back to its balance."""
    kind: ClassVar[str] = "withdraw"
    source: str
    validator: str

    def check(self, state: ModelState) -> Optional[str]:
        if state.matured_unbonds(self.source, self.validator) <= 0:
            return f"no withdrawable unbonds of {self.source} from {self.validator} at epoch {state.epoch}"
        return None

    def apply(self, state: ModelState) -> ModelState:
        matured = {
            key: amount for key, amount in state.unbonds.items()
            if key[0] == self.source and key[1] == self.validator and key[2] <= state.epoch
        }
        unbonds = {k: v for k, v in state.unbonds.items() if k not in matured}
        return state.evolve(
            balances=_add(state.balances, self.source, sum(matured.values(), ZERO)),
            unbonds=unbonds,
        )

    def to_command(self) -> Command:
        return cli.withdraw(self.source, self.validator)

    def keys(self, state: ModelState) -> ObservationKeys:
        return ObservationKeys(accounts=(self.source,))

    def sort_key(self) -> Tuple:
        return (self.kind, self.source, self.validator)


@dataclass(frozen=True, slots=True)
class SubmitProposal(Action):
    """Submit a governance proposal, locking the minimum deposit in escrow."""
    kind: ClassVar[str] = "submit_proposal"
    author: str

    def check(self, state: ModelState) -> Optional[str]:
        deposit = state.params.min_proposal_deposit
        if state.balance(self.author) < deposit:
            return f"balance of {self.author} is lower than the proposal deposit {deposit}"
        return None

    def apply(self, state: ModelState) -> ModelState:
        deposit = state.params.min_proposal_deposit
        proposal = ModelProposal(state.next_proposal_id, self.author, deposit)
        proposals = dict(state.proposals)
        proposals[proposal.proposal_id] = proposal
        return state.evolve(
            balances=_add(state.balances, self.author, -deposit),
            proposals=proposals,
            next_proposal_id=state.next_proposal_id + 1,
        )

    def to_command(self) -> Command:
        return cli.init_proposal(self.author)

    def keys(self, state: ModelState) -> ObservationKeys:
        return ObservationKeys(accounts=(self.author,), proposals=(state.next_proposal_id,))

    def sort_key(self) -> Tuple:
        return (self.kind, self.author)


@dataclass(frozen=True, slots=True)
class VoteProposal(Action):
    """Vote on an active proposal; voters must have bonded stake and vote once."""
    kind: ClassVar[str] = "vote_proposal"
    proposal_id: int
    voter: str
    vote: str = "yay"

    def check(self, state: ModelState) -> Optional[str]:
        proposal = state.proposals.get(self.proposal_id)
        if proposal is None:
            return f"no proposal {self.proposal_id}"
        if self.vote not in VOTES:
            return f"unknown vote {self.vote!r}"
        if state.delegations(self.voter) <= 0:
            return f"{self.voter} has no bonded stake"
        if self.voter in proposal.voters:
            return f"{self.voter} already voted on proposal {self.proposal_id}"
        return None

    def apply(self, state: ModelState) -> ModelState:
        proposal = state.proposals[self.proposal_id]
        proposals = dict(state.proposals)
        proposals[self.proposal_id] = replace(proposal, votes=proposal.votes + ((self.voter, self.vote),))
        return state.evolve(proposals=proposals)

    def to_command(self) -> Command:
        return cli.vote_proposal(self.proposal_id, self.voter, self.vote)

    def keys(self, state: ModelState) -> ObservationKeys:
        return ObservationKeys(proposals=(self.proposal_id,))

    def sort_key(self) -> Tuple:
        return (self.kind, self.proposal_id, self.voter, self.vote)


# ============================================================================
# TRANSITIONS
# ============================================================================

def conserves_supply(state: ModelState, action: Action) -> Decimal:
    """supply_delta of a transition that only moves tokens."""
    return ZERO


@dataclass(frozen=True)
class Transition:
    """
    One kind of state transition.

    Attributes:
        kind: Action kind name
        enumerate: state -> actions of this kind worth trying (unfiltered)
        uses_epoch: True if the precondition depends on the current epoch
        supply_delta: (state, action) -> change of total supply the action causes
    """
    kind: str
    enumerate: Callable[[ModelState], Iterator[Action]]
    uses_epoch: bool = False
    supply_delta: Callable[[ModelState, Action], Decimal] = conserves_supply


# Generated bonds and proposals keep this much liquid on their source.
LIQUIDITY_FLOOR = Decimal(1)


def _enumerate_transfers(state: ModelState) -> Iterator[Action]:
    accounts = state.accounts
    for source in accounts:
        for target in accounts:
            if source != target:
                for amount in amount_ladder(state.balance(source)):
                    yield Transfer(source, target, amount)


def _enumerate_bonds(state: ModelState) -> Iterator[Action]:
    for source in state.accounts:
        for validator in state.validators:
            for amount in amount_ladder(state.balance(source) - LIQUIDITY_FLOOR):
                yield Bond(source, validator, amount)


def _enumerate_unbonds(state: ModelState) -> Iterator[Action]:
    for (source, validator), bonded in sorted(state.bonds.items()):
        for amount in amount_ladder(bonded):
            yield Unbond(source, validator, amount)


def _enumerate_withdrawals(state: ModelState) -> Iterator[Action]:
    for source, validator in sorted({(d, v) for d, v, _ in state.unbonds}):
        yield Withdraw(source, validator)


def _enumerate_proposals(state: ModelState) -> Iterator[Action]:
    deposit = state.params.min_proposal_deposit
    for author in state.accounts:
        if state.balance(author) - deposit >= LIQUIDITY_FLOOR:
            yield SubmitProposal(author)


def _enumerate_votes(state: ModelState) -> Iterator[Action]:
    for proposal_id in sorted(state.proposals):
        for voter in state.accounts:
            for vote in VOTES:
                yield VoteProposal(proposal_id, voter, vote)


TRANSITIONS: Dict[str, Transition] = {
    t.kind: t for t in (
        Transition(Transfer.kind, _enumerate_transfers),
        Transition(Bond.kind, _enumerate_bonds),
        Transition(Unbond.kind, _enumerate_unbonds),
        Transition(Withdraw.kind, _enumerate_withdrawals, uses_epoch=True),
        Transition(SubmitProposal.kind, _enumerate_proposals),
        Transition(VoteProposal.kind, _enumerate_votes),
    )
}

DEFAULT_KINDS = (Transfer.kind, Bond.kind, Unbond.kind)


class PreconditionFailed(ValueError):
    """Raised when an action is applied to a state that does not satisfy its precondition."""

    def __init__(self, action: Action, reason: str):
        super().__init__(f"{action.describe()}: {reason}")
        self.action = action
        self.reason = reason


class SupplyNotConserved(ValueError):
    """Raised when a transition changes total supply by other than its declared supply_delta."""

    def __init__(self, action: Action, expected: Decimal, actual: Decimal):
        super().__init__(
            f"{action.describe()}: total supply changed by {actual}, declared {expected}"
        )
        self.action = action
        self.expected = expected
        self.actual = actual


# ============================================================================
# MODEL
# ============================================================================

class Model:
    """
    Reference model over a set of enabled transition kinds.

    Example:
        model = Model(genesis, kinds=("transfer", "bond", "unbond"))
        state = model.initial
        candidates = model.generate_candidates(state)
        state = model.apply(state, candidates[0])
    """

    def __init__(self, genesis: GenesisParams, kinds: Sequence[str] = DEFAULT_KINDS):
        unknown = [k for k in kinds if k not in TRANSITIONS]
        if unknown:
            raise ValueError(f"Unknown action kinds: {unknown}")
        self.genesis = genesis
        self.kinds = tuple(kinds)
        self.initial = ModelState.from_genesis(genesis)

    @property
    def uses_epoch(self) -> bool:
        """True if some enabled precondition depends on the network's epoch."""
        return any(TRANSITIONS[k].uses_epoch for k in self.kinds)

    def generate_candidates(self, state: ModelState) -> Tuple[Action, ...]:
        """
        Every enabled action whose precondition holds in state.

        The result is finite, duplicate-free and sorted, so a seeded choice
        over it is reproducible.
        """
        candidates = {a for group in self.candidates_by_kind(state).values() for a in group}
        return tuple(sorted(candidates, key=lambda a: a.sort_key()))

    def candidates_by_kind(self, state: ModelState) -> Dict[str, Tuple[Action, ...]]:
        """Valid candidates grouped by kind, in enabled-kind order; empty kinds are left out."""
        grouped: Dict[str, Tuple[Action, ...]] = {}
        for kind in self.kinds:
            actions = {a for a in TRANSITIONS[kind].enumerate(state) if a.check(state) is None}
            if actions:
                grouped[kind] = tuple(sorted(actions, key=lambda a: a.sort_key()))
        return grouped

    def apply(self, state: ModelState, action: Action) -> ModelState:
        """
        Pure successor state.

        Raises:
            PreconditionFailed: If the action's precondition does not hold
            SupplyNotConserved: If total supply moved by other than the
                transition's supply_delta
        """
        reason = action.check(state)
        if reason is not None:
            raise PreconditionFailed(action, reason)
        after = action.apply(state)
        declared = TRANSITIONS[action.kind].supply_delta(state, action)
        changed = after.total_supply() - state.total_supply()
        if changed != declared:
            raise SupplyNotConserved(action, declared, changed)
        return after

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def diff(self, observed: ObservedState, predicted: ModelState) -> List[Dict[str, Any]]:
        """
        Discrepancies between observed and predicted state.

        Only what was observed is compared. Returns an empty list on agreement.
        """
        discrepancies: List[Dict[str, Any]] = []
        for account, actual in sorted(observed.balances.items()):
            expected = predicted.balance(account)
            if actual != expected:
                discrepancies.append(
                    {"field": "balance", "key": account, "expected": expected, "actual": actual})
        for pair, actual in sorted(observed.bonds.items()):
            expected = predicted.bond(*pair)
            if actual != expected:
                discrepancies.append(
                    {"field": "bond", "key": "->".join(pair), "expected": expected, "actual": actual})
        if observed.validator_set is not None:
            expected_set = sorted(predicted.validator_set())
            actual_set = sorted(observed.validator_set)
            if expected_set != actual_set:
                discrepancies.append(
                    {"field": "validator_set", "key": "*", "expected": expected_set, "actual": actual_set})
        for proposal_id, info in sorted(observed.proposals.items()):
            proposal = predicted.proposals.get(proposal_id)
            expected_author = proposal.author if proposal else None
            actual_author = info.author if info else None
            if actual_author != expected_author:
                discrepancies.append(
                    {"field": "proposal", "key": proposal_id, "expected": expected_author, "actual": actual_author})
        return discrepancies

    def check(self, observed: ObservedState, predicted: ModelState) -> bool:
        return not self.diff(observed, predicted)

    def keys_for(self, state: ModelState, action: Action) -> ObservationKeys:
        """Observation keys for the state touched by action (evaluated in the pre-state)."""
        return action.keys(state)


def to_actions(raw: Sequence[Tuple[str, ...]]) -> List[Action]:
    """
    Build actions from (kind, *fields) tuples.

    Example:
        to_actions([("transfer", "albert", "bertha", 10)])
    """
    factories: Dict[str, Callable[..., Action]] = {
        Transfer.kind: lambda s, t, a: Transfer(s, t, to_amount(a)),
        Bond.kind: lambda s, v, a: Bond(s, v, to_amount(a)),
        Unbond.kind: lambda s, v, a: Unbond(s, v, to_amount(a)),
        Withdraw.kind: Withdraw,
        SubmitProposal.kind: SubmitProposal,
        VoteProposal.kind: lambda p, v, vote="yay": VoteProposal(int(p), v, vote),
    }
    return [factories[kind](*fields) for kind, *fields in raw]
