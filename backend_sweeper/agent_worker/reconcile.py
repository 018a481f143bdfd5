"""
Startup reconciliation of sweeps and withdrawals interrupted by a crash.

Transaction hashes are persisted before broadcast, so:
- row with a hash   → resolved from its receipt (completed / failed), or left
                      as-is and reported while the chain does not know it yet
- row without hash  → never broadcast; marked failed
                      ("interrupted before submission")

Nothing is resubmitted here.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from backend_sweeper.chain.client import ChainClient
from backend_sweeper.chain.models import Confirmed, Reverted
from backend_sweeper.core.exceptions import NetworkError
from backend_sweeper.database.ledger import PersistenceLedger
from backend_sweeper.database.models import (
    DepositStatus,
    SweepOperation,
    SweepStatus,
    WithdrawalStatus,
)
from backend_sweeper.sweeper_logging import get_logger

logger = get_logger(__name__)

INTERRUPTED = "interrupted before submission"
_SCAN_LIMIT = 10_000


@dataclass
class ReconcileReport:
    resolved: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"resolved": list(self.resolved), "unresolved": list(self.unresolved)}


def reconcile(ledger: PersistenceLedger, chain: ChainClient) -> ReconcileReport:
    report = ReconcileReport()
    active = ledger.list_sweep_operations(status=SweepStatus.IN_PROGRESS, limit=_SCAN_LIMIT)
    active += ledger.list_sweep_operations(status=SweepStatus.PENDING, limit=_SCAN_LIMIT)
    for op in active:
        _reconcile_sweep(ledger, chain, op, report)
    for request in ledger.list_withdrawals(status=WithdrawalStatus.PROCESSING):
        label = f"withdrawal:{request.id}"
        if not request.tx_hash:
            ledger.finish_withdrawal(request.id, WithdrawalStatus.FAILED, error_message=INTERRUPTED)
            report.resolved.append(label)
            continue
        outcome = _receipt(chain, request.tx_hash)
        if isinstance(outcome, Confirmed):
            ledger.finish_withdrawal(request.id, WithdrawalStatus.COMPLETED, tx_hash=request.tx_hash)
            report.resolved.append(label)
        elif isinstance(outcome, Reverted):
            ledger.finish_withdrawal(
                request.id,
                WithdrawalStatus.FAILED,
                tx_hash=request.tx_hash,
                error_message=f"withdrawal transfer reverted: {outcome.reason}",
            )
            report.resolved.append(label)
        else:
            report.unresolved.append(label)

    logger.info(
        "reconcile_done",
        resolved=len(report.resolved),
        unresolved=len(report.unresolved),
        unresolved_items=report.unresolved,
    )
    return report


def _receipt(chain: ChainClient, tx_hash: str):
    try:
        return chain.check_confirmation(tx_hash)
    except NetworkError as e:
        logger.warning("reconcile_receipt_failed", tx_hash=tx_hash, error=str(e))
        return None


def _reconcile_sweep(
    ledger: PersistenceLedger,
    chain: ChainClient,
    op: SweepOperation,
    report: ReconcileReport,
) -> None:
    label = f"sweep:{op.id}"
    open_ids = [d.id for d in ledger.open_deposits(op.wallet_address) if d.id in op.deposit_ids]

    if not op.sweep_tx_hash:
        # The token transfer was never broadcast; deposits stay open for the next pass.
        ledger.transition_sweep(op.id, SweepStatus.FAILED, error_message=INTERRUPTED)
        ledger.note_deposit_error(open_ids, INTERRUPTED)
        report.resolved.append(label)
        return

    outcome = _receipt(chain, op.sweep_tx_hash)
    if outcome is None:
        report.unresolved.append(label)
        return
    if op.status == SweepStatus.PENDING:
        ledger.transition_sweep(op.id, SweepStatus.IN_PROGRESS)
    if isinstance(outcome, Confirmed):
        ledger.transition_sweep(op.id, SweepStatus.COMPLETED)
        detected = [
            d.id
            for d in ledger.open_deposits(op.wallet_address)
            if d.id in open_ids and d.status == DepositStatus.DETECTED
        ]
        ledger.transition_deposits(detected, DepositStatus.GAS_FUNDED, gas_tx_hash=op.gas_tx_hash)
        ledger.transition_deposits(
            open_ids, DepositStatus.SWEPT, gas_tx_hash=op.gas_tx_hash, sweep_tx_hash=op.sweep_tx_hash
        )
    else:
        message = f"sweep transfer reverted: {outcome.reason}"
        ledger.transition_sweep(op.id, SweepStatus.FAILED, error_message=message)
        ledger.transition_deposits(open_ids, DepositStatus.FAILED, sweep_tx_hash=op.sweep_tx_hash, error_message=message)
    report.resolved.append(label)
