"""
Tests for WithdrawalProcessor: spendable checks, idempotency, FIFO drain.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from backend_sweeper.core.exceptions import InsufficientFundsError, NetworkError, RevertedError
from backend_sweeper.database.models import WithdrawalStatus

from tests.conftest import MASTER_ADDRESS, wei

USER_WALLET = "0x8ba1f109551bD432803012645Ac136ddd64DBA72"


@pytest.fixture
def processor(controller, master, chain):
    chain.set_token(MASTER_ADDRESS, "300")
    return controller.withdrawals


def test_insufficient_funds_leaves_pending(processor, controller, chain):
    """500 requested against 300 spendable: rejected, request stays pending."""
    with pytest.raises(InsufficientFundsError) as exc:
        processor.submit_withdrawal("w-1", USER_WALLET, Decimal("500"), "user-1")
    assert exc.value.available == Decimal("300")
    assert exc.value.required == Decimal("500")
    assert controller.ledger.get_withdrawal("w-1").status == WithdrawalStatus.PENDING
    assert chain.submitted == []


def test_withdrawal_completes_and_is_idempotent(processor, controller, chain):
    done = processor.submit_withdrawal("w-2", USER_WALLET, Decimal("120.5"), "user-1")
    assert done.status == WithdrawalStatus.COMPLETED
    assert done.tx_hash == chain.submitted[0]["hash"]
    assert chain.token_of(USER_WALLET) == 120_500_000_000_000_000_000

    again = processor.submit_withdrawal("w-2", USER_WALLET, Decimal("120.5"), "user-1")
    assert again.status == WithdrawalStatus.COMPLETED
    assert again.tx_hash == done.tx_hash
    assert len(chain.submitted) == 1


def test_withdrawal_reserve_reduces_spendable(processor, controller):
    cfg = controller.registry.get_master_config()
    cfg.withdrawal_reserve = Decimal("250")
    controller.registry.set_master_config(cfg)
    assert processor.spendable_balance() == Decimal("50")
    with pytest.raises(InsufficientFundsError):
        processor.submit_withdrawal("w-3", USER_WALLET, Decimal("60"), "user-1")


def test_invalid_destination_fails(processor, controller, chain):
    result = processor.submit_withdrawal("w-4", "0xnot-an-address", Decimal("10"), "user-1")
    assert result.status == WithdrawalStatus.FAILED
    assert "invalid destination" in result.error_message
    assert chain.submitted == []


def test_reverted_transfer_fails_with_hash(processor, chain):
    chain.outcome["token"] = "revert"
    result = processor.submit_withdrawal("w-5", USER_WALLET, Decimal("10"), "user-1")
    assert result.status == WithdrawalStatus.FAILED
    assert result.tx_hash == chain.submitted[0]["hash"]


def test_node_rejection_marks_failed(processor, chain):
    chain.submit_errors["token"] = RevertedError("nonce too low")
    result = processor.submit_withdrawal("w-6", USER_WALLET, Decimal("10"), "user-1")
    assert result.status == WithdrawalStatus.FAILED
    assert "nonce too low" in result.error_message
    assert chain.submitted == []


def test_unacknowledged_broadcast_stays_processing(processor, controller, chain):
    """Outcome unknown and no receipt: left processing, never resubmitted."""
    chain.submit_errors["token"] = NetworkError("timeout")
    result = processor.submit_withdrawal("w-8", USER_WALLET, Decimal("10"), "user-1")
    assert result.status == WithdrawalStatus.PROCESSING
    assert result.tx_hash is not None
    assert chain.submitted == []

    chain.submit_errors.clear()
    again = processor.submit_withdrawal("w-8", USER_WALLET, Decimal("10"), "user-1")
    assert again.status == WithdrawalStatus.PROCESSING
    assert chain.submitted == []
    # still reserved against the hot wallet
    assert processor.spendable_balance() == Decimal("290")
    assert controller.initialize().unresolved == ["withdrawal:w-8"]


def test_lost_broadcast_reply_resolved_from_receipt(processor, chain):
    """The node accepted the transfer but the reply was lost: the receipt decides."""
    chain.lost_acks.add("token")
    result = processor.submit_withdrawal("w-7", USER_WALLET, Decimal("10"), "user-1")
    assert result.status == WithdrawalStatus.COMPLETED
    assert result.tx_hash == chain.submitted[0]["hash"]
    assert chain.token_of(USER_WALLET) == wei("10")


def test_drain_stops_at_unknown_outcome(processor, controller, chain):
    ledger = controller.ledger
    ledger.create_withdrawal("a", "u1", USER_WALLET, Decimal("10"), now=1)
    ledger.create_withdrawal("b", "u2", USER_WALLET, Decimal("10"), now=2)
    chain.submit_errors["token"] = NetworkError("timeout")

    results = processor.process_pending()

    assert [(w.id, w.status) for w in results] == [("a", WithdrawalStatus.PROCESSING)]
    assert ledger.get_withdrawal("b").status == WithdrawalStatus.PENDING


def test_fifo_drain_stops_at_first_uncoverable(processor, controller, chain):
    ledger = controller.ledger
    ledger.create_withdrawal("a", "u1", USER_WALLET, Decimal("100"), now=1)
    ledger.create_withdrawal("b", "u2", USER_WALLET, Decimal("250"), now=2)
    ledger.create_withdrawal("c", "u3", USER_WALLET, Decimal("10"), now=3)

    assert [w.id for w in processor.list_pending()] == ["a", "b", "c"]
    results = processor.process_pending()

    assert [(w.id, w.status) for w in results] == [
        ("a", WithdrawalStatus.COMPLETED),
        ("b", WithdrawalStatus.PENDING),
    ]
    assert ledger.get_withdrawal("c").status == WithdrawalStatus.PENDING
    assert [w.id for w in processor.list_pending()] == ["b", "c"]


def test_in_flight_withdrawals_count_against_spendable(processor, controller):
    ledger = controller.ledger
    ledger.create_withdrawal("x", "u1", USER_WALLET, Decimal("200"))
    assert ledger.claim_withdrawal("x") is True
    assert ledger.claim_withdrawal("x") is False
    assert processor.spendable_balance() == Decimal("100")
    with pytest.raises(InsufficientFundsError):
        processor.submit_withdrawal("y", USER_WALLET, Decimal("150"), "u2")
