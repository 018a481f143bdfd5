"""
Admin sweep routes: deposit checks, hot wallet status, withdrawals,
wallet statistics and deposit wallet provisioning.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backend_sweeper.agent_worker.runtime import AutomationController
from backend_sweeper.api_server.deps import get_controller
from backend_sweeper.database.models import WithdrawalStatus
from backend_sweeper.sweeper_logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

_WITHDRAWAL_STATUS_CODES = {
    WithdrawalStatus.PROCESSING: 202,
    WithdrawalStatus.FAILED: 422,
}


# -----------------------------------------------------------------------------
# Request / response models
# -----------------------------------------------------------------------------


class CheckDepositsRequest(BaseModel):
    """POST /check-deposits body. Omit wallet_address for a tier-gated full scan."""

    wallet_address: str | None = Field(None, max_length=64, description="Scan exactly this wallet")


class ScanResponse(BaseModel):
    new_deposits: int = Field(..., description="Deposits recorded by this scan")
    total_scanned: int = Field(..., description="Wallets whose balance was read this scan (failed reads included)")
    errors: list[str] = Field(default_factory=list, description="Per-wallet error messages")


class HotWalletStatusResponse(BaseModel):
    address: str = Field(..., description="Hot wallet address")
    native_balance: str = Field(..., description="Native (gas) balance")
    asset_balance: str = Field(..., description="Token balance")
    is_connected: bool = Field(..., description="False when the RPC could not be reached")
    last_update: int = Field(..., description="Unix timestamp of this reading")


class ProcessWithdrawalRequest(BaseModel):
    """POST /process-withdrawal body; withdrawal_id is the idempotency key."""

    withdrawal_id: str = Field(..., min_length=1, max_length=64)
    to_address: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0)
    user_id: str = Field(..., min_length=1, max_length=64)


class ProcessWithdrawalResponse(BaseModel):
    withdrawal_id: str
    status: str = Field(..., description="pending | processing | completed | failed")
    tx_hash: str | None = Field(None, description="Transfer transaction hash, when submitted")
    error: str | None = Field(None, description="Failure reason, when failed")


class GenerateWalletRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)


class GenerateWalletResponse(BaseModel):
    address: str = Field(..., description="New deposit wallet address")
    user_id: str


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


@router.post("/check-deposits", response_model=ScanResponse)
def check_deposits(
    body: CheckDepositsRequest | None = None,
    controller: AutomationController = Depends(get_controller),
) -> ScanResponse:
    """Scan one wallet (tier gating bypassed) or every wallet due this pass."""
    wallet_address = (body.wallet_address or "").strip() if body else ""
    result = controller.scanner.scan(wallet_address or None)
    logger.info(
        "api_check_deposits",
        targeted=bool(wallet_address),
        total_scanned=result.total_scanned,
        new_deposits=result.new_deposits,
    )
    return ScanResponse(**result.to_dict())


@router.get("/check-deposits", response_model=ScanResponse)
def check_all_deposits(controller: AutomationController = Depends(get_controller)) -> ScanResponse:
    return ScanResponse(**controller.scanner.scan().to_dict())


@router.get("/hot-wallet-status", response_model=HotWalletStatusResponse)
def hot_wallet_status(controller: AutomationController = Depends(get_controller)) -> HotWalletStatusResponse:
    return HotWalletStatusResponse(**controller.hot_wallet_status().to_dict())


@router.get("/process-withdrawal")
def list_pending_withdrawals(controller: AutomationController = Depends(get_controller)) -> dict[str, Any]:
    """Pending withdrawal requests in processing order."""
    pending = controller.withdrawals.list_pending()
    return {"count": len(pending), "withdrawals": [w.to_dict() for w in pending]}


@router.post("/process-withdrawal", response_model=ProcessWithdrawalResponse)
def process_withdrawal(
    body: ProcessWithdrawalRequest,
    controller: AutomationController = Depends(get_controller),
) -> JSONResponse:
    """
    Create (if new) and settle one withdrawal. 200 with the tx hash when
    completed; 202 while the outcome is unknown (processing, left for
    reconciliation); 422 when it ended failed; 409 (InsufficientFundsError) when
    the hot wallet cannot cover it and the request stays pending.
    """
    request = controller.withdrawals.submit_withdrawal(
        body.withdrawal_id.strip(),
        body.to_address.strip(),
        body.amount,
        body.user_id.strip(),
    )
    resp = ProcessWithdrawalResponse(
        withdrawal_id=request.id,
        status=request.status.value,
        tx_hash=request.tx_hash,
        error=request.error_message,
    )
    return JSONResponse(
        status_code=_WITHDRAWAL_STATUS_CODES.get(request.status, 200),
        content=resp.model_dump(),
    )


@router.get("/wallet-stats")
def wallet_stats(controller: AutomationController = Depends(get_controller)) -> dict[str, Any]:
    return controller.ledger.wallet_stats().to_dict()


@router.post("/generate-wallet", response_model=GenerateWalletResponse)
def generate_wallet(
    body: GenerateWalletRequest,
    controller: AutomationController = Depends(get_controller),
) -> JSONResponse:
    """Provision a deposit wallet for a user. Returns the address only."""
    address = controller.registry.provision_wallet(body.user_id.strip(), controller.secrets)
    return JSONResponse(
        status_code=201,
        content=GenerateWalletResponse(address=address, user_id=body.user_id.strip()).model_dump(),
    )
