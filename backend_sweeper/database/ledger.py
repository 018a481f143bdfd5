"""
PersistenceLedger: durable record of deposits, sweep operations, withdrawal
requests, gas operations and the status history of each.

Every status change goes through _transition(), which validates the edge
against database.models.ALLOWED_TRANSITIONS and appends a status_history row
in the same session, so a row's status and its audit trail never diverge.
"""

from __future__ import annotations

import json
import time
from decimal import Decimal
from typing import Iterable

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from backend_sweeper.core.exceptions import (
    NotFoundError,
    PersistenceError,
    WalletLockedError,
)
from backend_sweeper.database.database import Database
from backend_sweeper.database.models import (
    ENTITY_DEPOSIT,
    ENTITY_SWEEP,
    ENTITY_WITHDRAWAL,
    Deposit,
    DepositStatus,
    GasOperation,
    GasStats,
    StatusChange,
    SweepOperation,
    SweepStatus,
    WalletStats,
    WithdrawalRequest,
    WithdrawalStatus,
    check_transition,
)
from backend_sweeper.database.tables import (
    DepositRow,
    DepositWalletRow,
    GasOperationRow,
    StatusHistoryRow,
    SweepOperationRow,
    WithdrawalRow,
)
from backend_sweeper.sweeper_logging import get_logger
from backend_sweeper.utils.wallet_utils import to_decimal

logger = get_logger(__name__)

OPEN_DEPOSIT_STATUSES = (DepositStatus.DETECTED.value, DepositStatus.GAS_FUNDED.value)
ACTIVE_SWEEP_STATUSES = (SweepStatus.PENDING.value, SweepStatus.IN_PROGRESS.value)
SECONDS_PER_DAY = 86_400
_MAX_ERROR_LEN = 1024


def _now() -> int:
    return int(time.time())


def _clip(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:_MAX_ERROR_LEN]


def _deposit_from_row(row: DepositRow) -> Deposit:
    return Deposit(
        id=row.id,
        wallet_address=row.wallet_address,
        user_id=row.user_id,
        amount=to_decimal(row.amount),
        asset=row.asset,
        status=DepositStatus(row.status),
        gas_tx_hash=row.gas_tx_hash,
        sweep_tx_hash=row.sweep_tx_hash,
        error_message=row.error_message,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _sweep_from_row(row: SweepOperationRow) -> SweepOperation:
    return SweepOperation(
        id=row.id,
        wallet_address=row.wallet_address,
        amount=to_decimal(row.amount),
        status=SweepStatus(row.status),
        gas_tx_hash=row.gas_tx_hash,
        sweep_tx_hash=row.sweep_tx_hash,
        error_message=row.error_message,
        deposit_ids=json.loads(row.deposit_ids) if row.deposit_ids else [],
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _withdrawal_from_row(row: WithdrawalRow) -> WithdrawalRequest:
    return WithdrawalRequest(
        id=row.id,
        user_id=row.user_id,
        to_address=row.to_address,
        amount=to_decimal(row.amount),
        status=WithdrawalStatus(row.status),
        tx_hash=row.tx_hash,
        error_message=row.error_message,
        created_at=row.created_at,
        processed_at=row.processed_at,
    )


def _gas_op_from_row(row: GasOperationRow) -> GasOperation:
    return GasOperation(
        id=row.id,
        operation_type=row.operation_type,
        status=row.status,
        wallet_address=row.wallet_address,
        native_amount=to_decimal(row.native_amount),
        gas_used=row.gas_used or 0,
        fee_native=to_decimal(row.fee_native),
        tx_hash=row.tx_hash,
        error_message=row.error_message,
        created_at=row.created_at,
    )


class PersistenceLedger:
    """Deposits, sweeps, withdrawals and gas operations over one Database."""

    def __init__(self, db: Database, asset_symbol: str = "USDT") -> None:
        self.db = db
        self.asset_symbol = asset_symbol

    # ------------------------------------------------------------------
    # status history
    # ------------------------------------------------------------------

    def _transition(
        self,
        session,
        entity_type: str,
        entity_id,
        row,
        new_status: str,
        now: int,
        note: str | None = None,
    ) -> None:
        current = row.status
        check_transition(entity_type, current, new_status)
        row.status = new_status
        session.add(
            StatusHistoryRow(
                entity_type=entity_type,
                entity_id=str(entity_id),
                from_status=current,
                to_status=new_status,
                note=_clip(note),
                created_at=now,
            )
        )

    def _history_created(self, session, entity_type: str, entity_id, status: str, now: int) -> None:
        session.add(
            StatusHistoryRow(
                entity_type=entity_type,
                entity_id=str(entity_id),
                from_status=None,
                to_status=status,
                created_at=now,
            )
        )

    def status_history(self, entity_type: str, entity_id) -> list[StatusChange]:
        with self.db.session_scope() as session:
            rows = (
                session.query(StatusHistoryRow)
                .filter(
                    StatusHistoryRow.entity_type == entity_type,
                    StatusHistoryRow.entity_id == str(entity_id),
                )
                .order_by(StatusHistoryRow.id.asc())
                .all()
            )
            return [
                StatusChange(
                    entity_type=r.entity_type,
                    entity_id=r.entity_id,
                    from_status=r.from_status,
                    to_status=r.to_status,
                    note=r.note,
                    created_at=r.created_at,
                )
                for r in rows
            ]

    # ------------------------------------------------------------------
    # deposits
    # ------------------------------------------------------------------

    def record_deposit(
        self,
        wallet_address: str,
        user_id: str,
        amount: Decimal,
        asset: str | None = None,
        *,
        now: int | None = None,
    ) -> Deposit:
        """Create a Deposit at `detected`."""
        if amount <= 0:
            raise PersistenceError(f"deposit amount must be positive, got {amount}")
        now = now if now is not None else _now()
        with self.db.session_scope() as session:
            row = DepositRow(
                wallet_address=wallet_address,
                user_id=user_id,
                amount=str(amount),
                asset=asset or self.asset_symbol,
                status=DepositStatus.DETECTED.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._history_created(session, ENTITY_DEPOSIT, row.id, row.status, now)
            deposit = _deposit_from_row(row)
        logger.info(
            "deposit_detected",
            deposit_id=deposit.id,
            wallet_id=wallet_address[:10],
            amount=amount,
        )
        return deposit

    def get_deposit(self, deposit_id: int) -> Deposit:
        with self.db.session_scope() as session:
            row = session.get(DepositRow, deposit_id)
            if row is None:
                raise NotFoundError(f"deposit {deposit_id} not found")
            return _deposit_from_row(row)

    def list_deposits(
        self,
        *,
        wallet_address: str | None = None,
        status: DepositStatus | str | None = None,
        limit: int = 100,
    ) -> list[Deposit]:
        """Newest first."""
        with self.db.session_scope() as session:
            q = session.query(DepositRow)
            if wallet_address:
                q = q.filter(DepositRow.wallet_address == wallet_address)
            if status:
                q = q.filter(DepositRow.status == DepositStatus(status).value)
            rows = q.order_by(DepositRow.id.desc()).limit(limit).all()
            return [_deposit_from_row(r) for r in rows]

    def open_deposits(self, wallet_address: str) -> list[Deposit]:
        """Deposits not yet terminal for this wallet, oldest first."""
        with self.db.session_scope() as session:
            rows = (
                session.query(DepositRow)
                .filter(
                    DepositRow.wallet_address == wallet_address,
                    DepositRow.status.in_(OPEN_DEPOSIT_STATUSES),
                )
                .order_by(DepositRow.id.asc())
                .all()
            )
            return [_deposit_from_row(r) for r in rows]

    def wallets_with_open_deposits(self) -> set[str]:
        with self.db.session_scope() as session:
            rows = (
                session.query(DepositRow.wallet_address)
                .filter(DepositRow.status.in_(OPEN_DEPOSIT_STATUSES))
                .distinct()
                .all()
            )
            return {r[0] for r in rows}

    def transition_deposits(
        self,
        deposit_ids: Iterable[int],
        status: DepositStatus,
        *,
        gas_tx_hash: str | None = None,
        sweep_tx_hash: str | None = None,
        error_message: str | None = None,
        now: int | None = None,
    ) -> None:
        """Move every listed deposit to status; all or nothing."""
        now = now if now is not None else _now()
        ids = list(deposit_ids)
        if not ids:
            return
        with self.db.session_scope() as session:
            rows = session.query(DepositRow).filter(DepositRow.id.in_(ids)).all()
            if len(rows) != len(set(ids)):
                raise NotFoundError(f"deposits not found: {sorted(set(ids) - {r.id for r in rows})}")
            for row in rows:
                self._transition(session, ENTITY_DEPOSIT, row.id, row, status.value, now, error_message)
                if gas_tx_hash:
                    row.gas_tx_hash = gas_tx_hash
                if sweep_tx_hash:
                    row.sweep_tx_hash = sweep_tx_hash
                if error_message is not None:
                    row.error_message = _clip(error_message)
                row.updated_at = now

    def note_deposit_error(self, deposit_ids: Iterable[int], message: str, *, now: int | None = None) -> None:
        """Record a failure reason without changing status (retryable shortfalls)."""
        now = now if now is not None else _now()
        ids = list(deposit_ids)
        if not ids:
            return
        with self.db.session_scope() as session:
            session.execute(
                update(DepositRow)
                .where(DepositRow.id.in_(ids))
                .values(error_message=_clip(message), updated_at=now)
            )

    # ------------------------------------------------------------------
    # sweep operations
    # ------------------------------------------------------------------

    def create_sweep_operation(
        self,
        wallet_address: str,
        amount: Decimal,
        deposit_ids: Iterable[int],
        *,
        now: int | None = None,
    ) -> SweepOperation:
        """
        Insert a `pending` SweepOperation.

        Raises WalletLockedError when the wallet already has an active one;
        the partial unique index enforces this across processes.
        """
        now = now if now is not None else _now()
        try:
            with self.db.session_scope() as session:
                row = SweepOperationRow(
                    wallet_address=wallet_address,
                    amount=str(amount),
                    status=SweepStatus.PENDING.value,
                    deposit_ids=json.dumps(list(deposit_ids)),
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                self._history_created(session, ENTITY_SWEEP, row.id, row.status, now)
                return _sweep_from_row(row)
        except IntegrityError as e:
            raise WalletLockedError(
                f"wallet {wallet_address} already has an active sweep operation"
            ) from e

    def get_sweep_operation(self, op_id: int) -> SweepOperation:
        with self.db.session_scope() as session:
            row = session.get(SweepOperationRow, op_id)
            if row is None:
                raise NotFoundError(f"sweep operation {op_id} not found")
            return _sweep_from_row(row)

    def active_sweep_operation(self, wallet_address: str) -> SweepOperation | None:
        with self.db.session_scope() as session:
            row = (
                session.query(SweepOperationRow)
                .filter(
                    SweepOperationRow.wallet_address == wallet_address,
                    SweepOperationRow.status.in_(ACTIVE_SWEEP_STATUSES),
                )
                .first()
            )
            return _sweep_from_row(row) if row else None

    def list_sweep_operations(
        self,
        *,
        status: SweepStatus | str | None = None,
        wallet_address: str | None = None,
        limit: int = 100,
    ) -> list[SweepOperation]:
        with self.db.session_scope() as session:
            q = session.query(SweepOperationRow)
            if status:
                q = q.filter(SweepOperationRow.status == SweepStatus(status).value)
            if wallet_address:
                q = q.filter(SweepOperationRow.wallet_address == wallet_address)
            rows = q.order_by(SweepOperationRow.id.desc()).limit(limit).all()
            return [_sweep_from_row(r) for r in rows]

    def set_sweep_tx_hashes(
        self,
        op_id: int,
        *,
        gas_tx_hash: str | None = None,
        sweep_tx_hash: str | None = None,
        now: int | None = None,
    ) -> None:
        """Persist a signed transaction's hash before it is broadcast."""
        now = now if now is not None else _now()
        values: dict = {"updated_at": now}
        if gas_tx_hash:
            values["gas_tx_hash"] = gas_tx_hash
        if sweep_tx_hash:
            values["sweep_tx_hash"] = sweep_tx_hash
        with self.db.session_scope() as session:
            session.execute(
                update(SweepOperationRow).where(SweepOperationRow.id == op_id).values(**values)
            )

    def transition_sweep(
        self,
        op_id: int,
        status: SweepStatus,
        *,
        gas_tx_hash: str | None = None,
        sweep_tx_hash: str | None = None,
        error_message: str | None = None,
        now: int | None = None,
    ) -> SweepOperation:
        now = now if now is not None else _now()
        with self.db.session_scope() as session:
            row = session.get(SweepOperationRow, op_id)
            if row is None:
                raise NotFoundError(f"sweep operation {op_id} not found")
            self._transition(session, ENTITY_SWEEP, row.id, row, status.value, now, error_message)
            if gas_tx_hash:
                row.gas_tx_hash = gas_tx_hash
            if sweep_tx_hash:
                row.sweep_tx_hash = sweep_tx_hash
            if error_message is not None:
                row.error_message = _clip(error_message)
            row.updated_at = now
            return _sweep_from_row(row)

    def total_swept(self, since: int | None = None) -> Decimal:
        """Exact sum of `completed` SweepOperation amounts (optionally since a timestamp)."""
        with self.db.session_scope() as session:
            q = session.query(SweepOperationRow.amount).filter(
                SweepOperationRow.status == SweepStatus.COMPLETED.value
            )
            if since is not None:
                q = q.filter(SweepOperationRow.updated_at >= since)
            return sum((to_decimal(r[0]) for r in q.all()), Decimal("0"))

    # ------------------------------------------------------------------
    # withdrawals
    # ------------------------------------------------------------------

    def create_withdrawal(
        self,
        request_id: str,
        user_id: str,
        to_address: str,
        amount: Decimal,
        *,
        now: int | None = None,
    ) -> WithdrawalRequest:
        """Create a `pending` WithdrawalRequest. Idempotent on request_id."""
        now = now if now is not None else _now()
        try:
            with self.db.session_scope() as session:
                existing = session.get(WithdrawalRow, request_id)
                if existing is not None:
                    return _withdrawal_from_row(existing)
                row = WithdrawalRow(
                    id=request_id,
                    user_id=user_id,
                    to_address=(to_address or "").strip(),
                    amount=str(amount),
                    status=WithdrawalStatus.PENDING.value,
                    created_at=now,
                )
                session.add(row)
                session.flush()
                self._history_created(session, ENTITY_WITHDRAWAL, row.id, row.status, now)
                return _withdrawal_from_row(row)
        except IntegrityError:
            # Lost a race with a concurrent insert of the same id.
            return self.get_withdrawal(request_id)

    def get_withdrawal(self, request_id: str) -> WithdrawalRequest:
        with self.db.session_scope() as session:
            row = session.get(WithdrawalRow, request_id)
            if row is None:
                raise NotFoundError(f"withdrawal {request_id} not found")
            return _withdrawal_from_row(row)

    def list_withdrawals(
        self,
        *,
        status: WithdrawalStatus | str | None = None,
        limit: int | None = None,
    ) -> list[WithdrawalRequest]:
        """FIFO: creation time, then id."""
        with self.db.session_scope() as session:
            q = session.query(WithdrawalRow)
            if status:
                q = q.filter(WithdrawalRow.status == WithdrawalStatus(status).value)
            q = q.order_by(WithdrawalRow.created_at.asc(), WithdrawalRow.id.asc())
            if limit:
                q = q.limit(limit)
            return [_withdrawal_from_row(r) for r in q.all()]

    def pending_withdrawals(self, limit: int | None = None) -> list[WithdrawalRequest]:
        return self.list_withdrawals(status=WithdrawalStatus.PENDING, limit=limit)

    def claim_withdrawal(self, request_id: str, *, now: int | None = None) -> bool:
        """
        Move pending -> processing with a conditional UPDATE.

        Returns False when the row is no longer pending (another worker won,
        or it was already settled); the caller must not submit in that case.
        """
        now = now if now is not None else _now()
        with self.db.session_scope() as session:
            result = session.execute(
                update(WithdrawalRow)
                .where(
                    WithdrawalRow.id == request_id,
                    WithdrawalRow.status == WithdrawalStatus.PENDING.value,
                )
                .values(status=WithdrawalStatus.PROCESSING.value)
            )
            if result.rowcount != 1:
                return False
            session.add(
                StatusHistoryRow(
                    entity_type=ENTITY_WITHDRAWAL,
                    entity_id=request_id,
                    from_status=WithdrawalStatus.PENDING.value,
                    to_status=WithdrawalStatus.PROCESSING.value,
                    created_at=now,
                )
            )
            return True

    def set_withdrawal_tx_hash(self, request_id: str, tx_hash: str) -> None:
        """Persist the signed transfer's hash before it is broadcast."""
        with self.db.session_scope() as session:
            session.execute(
                update(WithdrawalRow).where(WithdrawalRow.id == request_id).values(tx_hash=tx_hash)
            )

    def finish_withdrawal(
        self,
        request_id: str,
        status: WithdrawalStatus,
        *,
        tx_hash: str | None = None,
        error_message: str | None = None,
        now: int | None = None,
    ) -> WithdrawalRequest:
        now = now if now is not None else _now()
        with self.db.session_scope() as session:
            row = session.get(WithdrawalRow, request_id)
            if row is None:
                raise NotFoundError(f"withdrawal {request_id} not found")
            self._transition(session, ENTITY_WITHDRAWAL, row.id, row, status.value, now, error_message)
            if tx_hash:
                row.tx_hash = tx_hash
            if error_message is not None:
                row.error_message = _clip(error_message)
            row.processed_at = now
            return _withdrawal_from_row(row)

    def in_flight_withdrawal_total(self) -> Decimal:
        """Sum of `processing` withdrawal amounts not yet reflected on-chain."""
        with self.db.session_scope() as session:
            rows = (
                session.query(WithdrawalRow.amount)
                .filter(WithdrawalRow.status == WithdrawalStatus.PROCESSING.value)
                .all()
            )
            return sum((to_decimal(r[0]) for r in rows), Decimal("0"))

    # ------------------------------------------------------------------
    # gas operations
    # ------------------------------------------------------------------

    def log_gas_operation(
        self,
        operation_type: str,
        status: str,
        *,
        wallet_address: str | None = None,
        native_amount: Decimal = Decimal("0"),
        gas_used: int = 0,
        fee_native: Decimal = Decimal("0"),
        tx_hash: str | None = None,
        error_message: str | None = None,
        now: int | None = None,
    ) -> GasOperation:
        now = now if now is not None else _now()
        with self.db.session_scope() as session:
            row = GasOperationRow(
                operation_type=operation_type,
                wallet_address=wallet_address,
                native_amount=str(native_amount),
                gas_used=int(gas_used or 0),
                fee_native=str(fee_native),
                status=status,
                tx_hash=tx_hash,
                error_message=_clip(error_message),
                created_at=now,
            )
            session.add(row)
            session.flush()
            return _gas_op_from_row(row)

    def list_gas_operations(self, *, since: int | None = None, limit: int = 100) -> list[GasOperation]:
        with self.db.session_scope() as session:
            q = session.query(GasOperationRow)
            if since is not None:
                q = q.filter(GasOperationRow.created_at >= since)
            rows = q.order_by(GasOperationRow.id.desc()).limit(limit).all()
            return [_gas_op_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # aggregates
    # ------------------------------------------------------------------

    def gas_stats(self, days: int = 7, *, now: int | None = None) -> GasStats:
        """Gas operation aggregates over the last `days` days."""
        days = max(1, int(days))
        now = now if now is not None else _now()
        since = now - days * SECONDS_PER_DAY
        stats = GasStats(days=days)
        with self.db.session_scope() as session:
            rows = session.query(GasOperationRow).filter(GasOperationRow.created_at >= since).all()
            for row in rows:
                stats.total_operations += 1
                if row.status != "completed":
                    stats.failed_operations += 1
                    continue
                stats.completed_operations += 1
                stats.total_fee_native += to_decimal(row.fee_native)
                stats.total_gas_used += row.gas_used or 0
                if row.operation_type == "distribute":
                    stats.total_native_distributed += to_decimal(row.native_amount)
            swept = (
                session.query(SweepOperationRow.amount)
                .filter(
                    SweepOperationRow.status == SweepStatus.COMPLETED.value,
                    SweepOperationRow.updated_at >= since,
                )
                .all()
            )
        stats.completed_sweeps = len(swept)
        stats.total_swept = sum((to_decimal(r[0]) for r in swept), Decimal("0"))
        if stats.total_operations:
            stats.average_fee_per_operation = stats.total_fee_native / stats.total_operations
            stats.success_rate = stats.completed_operations / stats.total_operations * 100
        return stats

    def wallet_stats(self, *, now: int | None = None) -> WalletStats:
        """Registry/ledger overview for the admin surface."""
        now = now if now is not None else _now()
        recent_since = now - SECONDS_PER_DAY
        stats = WalletStats(last_update=now)
        with self.db.session_scope() as session:
            stats.total_wallets = session.query(DepositWalletRow).count()
            swept = (
                session.query(DepositRow.amount, DepositRow.updated_at)
                .filter(DepositRow.status == DepositStatus.SWEPT.value)
                .all()
            )
            for amount, updated_at in swept:
                value = to_decimal(amount)
                stats.total_deposits += 1
                stats.total_deposit_amount += value
                if (updated_at or 0) >= recent_since:
                    stats.recent_deposits += 1
                    stats.recent_deposit_amount += value
            pending = (
                session.query(WithdrawalRow.amount)
                .filter(WithdrawalRow.status == WithdrawalStatus.PENDING.value)
                .all()
            )
            stats.pending_withdrawals = len(pending)
            stats.pending_withdrawal_amount = sum((to_decimal(r[0]) for r in pending), Decimal("0"))
        return stats
