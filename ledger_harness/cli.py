"""
cli.py - CLI Driver

Issues client commands against running nodes and turns their output into
typed results.

Classification of an executed command:
    - exit 0                                   -> APPLIED (output must satisfy the matcher)
    - tx output matching a rejection pattern   -> REJECTED (CommandRejected unless expected)
    - any other non-zero exit, or a timeout    -> CommandHarnessError

Queries (balance, bonds, validator set, proposal, block, epoch, tx result)
parse human-readable client output into the values the state-machine
model compares against its prediction.
"""

from __future__ import annotations

import json
import os
import re
import subprocess
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from .context import RunContext
from .core import (
    Command, CommandHarnessError, CommandRejected, CommandResult, Expect,
    NATIVE_TOKEN, Outcome, ScenarioCancelled, to_amount,
)
from .supervisor import RunningNode

# Granularity at which a running client process checks for cancellation.
_POLL_SLICE = 0.1

_TX_HASH = re.compile(r"Transaction hash:\s*([0-9A-Fa-f]+)")
_TX_HEIGHT = re.compile(r"applied at height\s+(\d+)", re.IGNORECASE)


# ============================================================================
# TYPED QUERY RESULTS
# ============================================================================

class QueryKind(Enum):
    BALANCE = "balance"
    BONDS = "bonds"
    VALIDATOR_SET = "validator-set"
    PROPOSAL = "query-proposal"
    BLOCK = "block"
    EPOCH = "epoch"
    TX_RESULT = "query-result"


@dataclass(frozen=True, slots=True)
class BlockInfo:
    height: int
    block_hash: str = ""
    time: str = ""


@dataclass(frozen=True, slots=True)
class ProposalInfo:
    proposal_id: int
    author: str
    status: str
    votes: int = 0


@dataclass(frozen=True, slots=True)
class TxReceipt:
    tx_hash: str
    applied: bool
    height: Optional[int] = None
    info: str = ""


@dataclass(frozen=True, slots=True)
class ObservationKeys:
    """
    Which parts of the chain state to observe.

    Attributes:
        accounts: Accounts whose native balance is queried
        bonds: (delegator, validator) pairs whose bond is queried
        validator_set: Whether the consensus validator set is queried
        proposals: Proposal ids to query
    """
    accounts: Tuple[str, ...] = ()
    bonds: Tuple[Tuple[str, str], ...] = ()
    validator_set: bool = False
    proposals: Tuple[int, ...] = ()


@dataclass
class ObservedState:
    """Snapshot of chain state taken through queries against one node."""
    node_id: str
    balances: Dict[str, Decimal] = field(default_factory=dict)
    bonds: Dict[Tuple[str, str], Decimal] = field(default_factory=dict)
    validator_set: Optional[Dict[str, Decimal]] = None
    proposals: Dict[int, Optional[ProposalInfo]] = field(default_factory=dict)


# ============================================================================
# OUTPUT PARSERS
# ============================================================================

def _amount(text: str, what: str) -> Decimal:
    try:
        return to_amount(text.replace(",", ""))
    except InvalidOperation as exc:
        raise CommandHarnessError(f"unparseable {what} amount {text!r}") from exc


def parse_balance(output: str, token: str = NATIVE_TOKEN) -> Decimal:
    """
    Parse `balance` output.

    "nam: 1000000" -> Decimal("1000000"); "No nam balance found ..." -> 0
    """
    if re.search(rf"No {re.escape(token)} balance found", output, re.IGNORECASE):
        return Decimal("0")
    match = re.search(rf"^\s*{re.escape(token)}:\s*([0-9][0-9,]*(?:\.[0-9]+)?)\s*$",
                      output, re.IGNORECASE | re.MULTILINE)
    if match is None:
        raise CommandHarnessError(f"no {token} balance in output: {output.strip()[:200]!r}")
    return _amount(match.group(1), "balance")


def parse_bonds(output: str) -> Decimal:
    if re.search(r"No bonds found", output, re.IGNORECASE):
        return Decimal("0")
    match = re.search(r"Bonds total:\s*([0-9][0-9,]*(?:\.[0-9]+)?)", output)
    if match is None:
        raise CommandHarnessError(f"no bond total in output: {output.strip()[:200]!r}")
    return _amount(match.group(1), "bond")


def parse_validator_set(output: str) -> Dict[str, Decimal]:
    """
    Parse the consensus section of `validator-set` output.

        Consensus validators:
          validator-0: 1000
          validator-1: 1000
        Below-capacity validators:
          ...
    """
    lines = output.splitlines()
    try:
        start = next(i for i, l in enumerate(lines) if l.strip().startswith("Consensus validators"))
    except StopIteration:
        raise CommandHarnessError(f"no consensus validator set in output: {output.strip()[:200]!r}") from None
    validators: Dict[str, Decimal] = {}
    for line in lines[start + 1:]:
        if not line.startswith((" ", "\t")):
            break
        name, sep, power = line.strip().rpartition(":")
        if not sep:
            raise CommandHarnessError(f"malformed validator line {line!r}")
        validators[name.strip()] = _amount(power.strip(), "voting power")
    return validators


def parse_proposal(output: str) -> Optional[ProposalInfo]:
    if re.search(r"Proposal .*not found", output, re.IGNORECASE):
        return None
    fields: Dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            fields[key.strip().lower()] = value.strip()
    try:
        return ProposalInfo(
            proposal_id=int(fields["proposal id"]),
            author=fields["author"],
            status=fields.get("status", ""),
            votes=int(fields.get("votes", "0")),
        )
    except (KeyError, ValueError) as exc:
        raise CommandHarnessError(f"malformed proposal output: {output.strip()[:200]!r}") from exc


def parse_block(output: str) -> Optional[BlockInfo]:
    """
    "Last committed block ID: 0A1B..., height: 12, time: 2026-..." -> BlockInfo(12, ...)

    Returns None before the first block is committed.
    """
    if re.search(r"No block has been committed yet", output):
        return None
    match = re.search(r"Last committed block ID:\s*(\S+?),\s*height:\s*(\d+)(?:,\s*time:\s*(\S+))?", output)
    if match is None:
        raise CommandHarnessError(f"no block in output: {output.strip()[:200]!r}")
    return BlockInfo(height=int(match.group(2)), block_hash=match.group(1), time=match.group(3) or "")


def parse_epoch(output: str) -> int:
    match = re.search(r"Last committed epoch:\s*(\d+)", output)
    if match is None:
        raise CommandHarnessError(f"no epoch in output: {output.strip()[:200]!r}")
    return int(match.group(1))


def parse_tx_result(output: str, tx_hash: str) -> Optional[TxReceipt]:
    """
    Parse `query-result` output; None while the transaction is not yet in a block.

        Transaction was applied with result: {"height": 7, "is_accepted": true, ...}
    """
    if re.search(r"No (transaction )?result found", output, re.IGNORECASE):
        return None
    match = re.search(r"Transaction was applied with result:\s*(\{.*\})", output, re.DOTALL)
    if match is None:
        raise CommandHarnessError(f"no tx result in output: {output.strip()[:200]!r}")
    try:
        body = json.loads(match.group(1))
    except ValueError as exc:
        raise CommandHarnessError(f"malformed tx result json: {match.group(1)[:200]!r}") from exc
    return TxReceipt(
        tx_hash=tx_hash,
        applied=bool(body.get("is_accepted", False)),
        height=body.get("height"),
        info=str(body.get("info", "")),
    )


# ============================================================================
# COMMAND BUILDERS
# ============================================================================

def transfer(source: str, target: str, amount: Any, token: str = NATIVE_TOKEN) -> Command:
    return Command.build("transfer", source=source, target=target, token=token,
                         amount=to_amount(amount), submits_tx=True)


def bond(source: str, validator: str, amount: Any) -> Command:
    return Command.build("bond", validator=validator, source=source,
                         amount=to_amount(amount), submits_tx=True)


def unbond(source: str, validator: str, amount: Any) -> Command:
    return Command.build("unbond", validator=validator, source=source,
                         amount=to_amount(amount), submits_tx=True)


def withdraw(source: str, validator: str) -> Command:
    return Command.build("withdraw", validator=validator, source=source, submits_tx=True)


def init_proposal(author: str, data_path: Optional[str] = None) -> Command:
    return Command.build("init-proposal", author=author, data_path=data_path, submits_tx=True)


def vote_proposal(proposal_id: int, voter: str, vote: str) -> Command:
    return Command.build("vote-proposal", proposal_id=proposal_id, vote=vote,
                         voter=voter, submits_tx=True)


def custom_tx(code_path: str, signer: str, data_path: Optional[str] = None) -> Command:
    """Submit a transaction whose logic is a wasm artifact."""
    return Command.build("tx", code_path=code_path, data_path=data_path,
                         signing_key=signer, submits_tx=True)


def update_account(address: str, code_path: str) -> Command:
    """Attach a validity predicate (wasm artifact) to an account."""
    return Command.build("update-account", address=address, code_path=code_path, submits_tx=True)


def query_command(kind: QueryKind, **args: Any) -> Command:
    """
    Build the client command for a read-only query.

    Args per kind:
        BALANCE: owner, token (default native)
        BONDS: owner, validator
        VALIDATOR_SET: none
        PROPOSAL: proposal_id
        BLOCK, EPOCH: none
        TX_RESULT: tx_hash
    """
    if kind == QueryKind.BALANCE:
        return Command.build("balance", owner=args["owner"], token=args.get("token", NATIVE_TOKEN))
    if kind == QueryKind.BONDS:
        return Command.build("bonds", owner=args["owner"], validator=args["validator"])
    if kind == QueryKind.PROPOSAL:
        return Command.build("query-proposal", proposal_id=args["proposal_id"])
    if kind == QueryKind.TX_RESULT:
        return Command.build("query-result", tx_hash=args["tx_hash"])
    return Command.build(kind.value)


# ============================================================================
# DRIVER
# ============================================================================

class CliDriver:
    """
    Runs client commands against RunningNodes of one run.

    Example:
        cli = CliDriver(ctx)
        result = cli.execute(node, transfer("albert", "bertha", 10))
        cli.query(node, QueryKind.BALANCE, owner="bertha")   # Decimal("1000010")
    """

    def __init__(self, ctx: RunContext):
        self.ctx = ctx
        self.settings = ctx.settings
        self._rejection = re.compile(
            "|".join(f"(?:{p})" for p in self.settings.rejection_patterns),
            re.IGNORECASE,
        ) if self.settings.rejection_patterns else None
        self.log = ctx.log.bind(component="cli")

    def client_argv(self, node: RunningNode, command: Command) -> Tuple[str, ...]:
        return (
            tuple(self.settings.client_command)
            + ("--base-dir", str(node.descriptor.data_dir))
            + command.argv()
            + ("--node", node.descriptor.rpc_address)
        )

    def is_rejection(self, output: str) -> bool:
        return self._rejection is not None and self._rejection.search(output) is not None

    def execute(self, node: RunningNode, command: Command) -> CommandResult:
        """
        Run a command against a node and classify the outcome.

        Returns:
            The CommandResult. Rejections are returned only when the command
            expects them.

        Raises:
            CommandRejected: The node rejected a command expected to apply
            CommandHarnessError: Unexpected exit code, unmatched output, timeout,
                or the target node is not running
            ScenarioCancelled: The run was cancelled (the client process is killed)
        """
        self.ctx.check_cancelled()
        if not node.is_alive():
            raise CommandHarnessError(
                f"node exited with code {node.exit_code} before '{command.render()}'",
                node_id=node.node_id,
            )
        argv = self.client_argv(node, command)
        timeout = command.timeout or self.settings.command_timeout
        started = time.monotonic()
        exit_code, stdout, stderr = self._run(node, command, argv, timeout)
        duration = time.monotonic() - started

        output = stdout + "\n" + stderr
        rejected = command.submits_tx and self.is_rejection(output)
        if exit_code != 0 and not rejected:
            result = self._result(command, node, argv, exit_code, stdout, stderr, duration, Outcome.REJECTED)
            self.log.error("command_failed", node=node.node_id, argv=command.render(),
                           exit_code=exit_code, output=result.summary())
            raise CommandHarnessError(
                f"'{command.render()}' exited with {exit_code}: {result.summary()}",
                result=result, node_id=node.node_id,
            )

        outcome = Outcome.REJECTED if rejected else Outcome.APPLIED
        result = self._result(command, node, argv, exit_code, stdout, stderr, duration, outcome)

        if outcome != command.expect.outcome:
            if outcome == Outcome.REJECTED:
                self.log.info("command_rejected", node=node.node_id, argv=command.render(),
                              output=result.summary())
                raise CommandRejected(result, node.node_id)
            raise CommandHarnessError(
                f"'{command.render()}' expected a rejection but was applied",
                result=result, node_id=node.node_id,
            )
        if not command.expect.matches_output(stdout, stderr):
            raise CommandHarnessError(
                f"'{command.render()}' output does not match expectation "
                f"(pattern={command.expect.pattern!r}, exact={command.expect.exact!r}): "
                f"{result.summary()}",
                result=result, node_id=node.node_id,
            )
        self.log.debug("command_executed", node=node.node_id, argv=command.render(),
                       outcome=outcome.value, duration=round(duration, 3), tx_hash=result.tx_hash)
        return result

    def confirm(self, node: RunningNode, result: CommandResult, receipt: TxReceipt) -> CommandResult:
        """
        Classify a submitted transaction by its block receipt.

        Clients that return before block inclusion report only the hash and
        exit 0; the receipt tells whether the block applied the transaction.

        Returns:
            The result with the receipt's outcome and height

        Raises:
            CommandRejected: The block rejected a command expected to apply
            CommandHarnessError: The block applied a command expected to be rejected
        """
        height = result.height if receipt.height is None else receipt.height
        if receipt.applied:
            confirmed = replace(result, outcome=Outcome.APPLIED, height=height)
        else:
            note = f"Transaction {receipt.tx_hash} rejected in block {receipt.height}: {receipt.info}\n"
            confirmed = replace(result, outcome=Outcome.REJECTED, height=height, stderr=result.stderr + note)
        if confirmed.outcome == result.command.expect.outcome:
            return confirmed
        if confirmed.outcome == Outcome.REJECTED:
            self.log.info("command_rejected_in_block", node=node.node_id, argv=result.command.render(),
                          tx_hash=receipt.tx_hash, info=receipt.info)
            raise CommandRejected(confirmed, node.node_id)
        raise CommandHarnessError(
            f"'{result.command.render()}' expected a rejection but block {receipt.height} applied it",
            result=confirmed, node_id=node.node_id,
        )

    def _result(self, command, node, argv, exit_code, stdout, stderr, duration, outcome) -> CommandResult:
        tx_hash = height = None
        if command.submits_tx:
            match = _TX_HASH.search(stdout)
            tx_hash = match.group(1) if match else None
            match = _TX_HEIGHT.search(stdout)
            height = int(match.group(1)) if match else None
        return CommandResult(
            command=command,
            node_id=node.node_id,
            argv=argv,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration=duration,
            outcome=outcome,
            tx_hash=tx_hash,
            height=height,
        )

    def _run(self, node: RunningNode, command: Command, argv: Tuple[str, ...], timeout: float) -> Tuple[int, str, str]:
        env = dict(os.environ)
        env["LEDGER_LOG"] = self.settings.log_level_env
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            raise CommandHarnessError(f"cannot launch client: {exc}", node_id=node.node_id) from exc

        deadline = time.monotonic() + timeout
        while True:
            try:
                stdout, stderr = process.communicate(timeout=min(_POLL_SLICE, max(0.0, deadline - time.monotonic())))
                return process.returncode, stdout.decode("utf-8", "replace"), stderr.decode("utf-8", "replace")
            except subprocess.TimeoutExpired:
                if self.ctx.cancelled:
                    self._abandon(process)
                    raise ScenarioCancelled(
                        f"{node.node_id}: '{command.render()}' abandoned ({self.ctx.cancel_reason})"
                    ) from None
                if time.monotonic() >= deadline:
                    self._abandon(process)
                    self.log.error("command_timeout", node=node.node_id, argv=command.render(), timeout=timeout)
                    raise CommandHarnessError(
                        f"'{command.render()}' timed out after {timeout}s", node_id=node.node_id
                    ) from None

    @staticmethod
    def _abandon(process: subprocess.Popen) -> None:
        process.kill()
        process.communicate()

    # ========================================================================
    # QUERIES
    # ========================================================================

    def query(self, node: RunningNode, kind: QueryKind, **args: Any) -> Any:
        """
        Run a read-only query and deserialize its output.

        Returns:
            BALANCE, BONDS: Decimal
            VALIDATOR_SET: Dict[str, Decimal] of consensus validators
            PROPOSAL: ProposalInfo or None
            BLOCK: BlockInfo or None
            EPOCH: int
            TX_RESULT: TxReceipt or None

        Raises:
            CommandHarnessError: If the output cannot be parsed
        """
        result = self.execute(node, query_command(kind, **args))
        parser = _PARSERS[kind]
        try:
            return parser(result.stdout, args)
        except CommandHarnessError as exc:
            raise CommandHarnessError(str(exc), result=result, node_id=node.node_id) from None

    def height(self, node: RunningNode) -> int:
        block = self.query(node, QueryKind.BLOCK)
        return 0 if block is None else block.height

    def epoch(self, node: RunningNode) -> int:
        return self.query(node, QueryKind.EPOCH)

    def observe_state(self, node: RunningNode, keys: ObservationKeys) -> ObservedState:
        """Query every balance, bond, proposal and (optionally) the validator set named in keys."""
        observed = ObservedState(node_id=node.node_id)
        for account in keys.accounts:
            observed.balances[account] = self.query(node, QueryKind.BALANCE, owner=account)
        for delegator, validator in keys.bonds:
            observed.bonds[(delegator, validator)] = self.query(
                node, QueryKind.BONDS, owner=delegator, validator=validator
            )
        if keys.validator_set:
            observed.validator_set = self.query(node, QueryKind.VALIDATOR_SET)
        for proposal_id in keys.proposals:
            observed.proposals[proposal_id] = self.query(node, QueryKind.PROPOSAL, proposal_id=proposal_id)
        return observed

    def expect_rejection(self, node: RunningNode, command: Command, pattern: Optional[str] = None) -> CommandResult:
        """Execute a command that must be rejected by the protocol."""
        return self.execute(node, command.with_expect(Expect.rejected(pattern)))


_PARSERS: Dict[QueryKind, Callable[[str, Dict[str, Any]], Any]] = {
    QueryKind.BALANCE: lambda out, a: parse_balance(out, a.get("token", NATIVE_TOKEN)),
    QueryKind.BONDS: lambda out, a: parse_bonds(out),
    QueryKind.VALIDATOR_SET: lambda out, a: parse_validator_set(out),
    QueryKind.PROPOSAL: lambda out, a: parse_proposal(out),
    QueryKind.BLOCK: lambda out, a: parse_block(out),
    QueryKind.EPOCH: lambda out, a: parse_epoch(out),
    QueryKind.TX_RESULT: lambda out, a: parse_tx_result(out, a["tx_hash"]),
}
