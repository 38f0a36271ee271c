"""
Withdrawal Routes - Teacher payout requests and admin processing.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_ledger, get_payment_provider, require_role
from app.db.session import get_read_db, get_write_db
from app.exceptions import (
    InsufficientTokensError,
    InvalidWithdrawalStateError,
    PaymentProviderError,
    WalletNotFoundError,
    WithdrawalNotFoundError,
    WriteVerificationError,
)
from app.models.api import (
    CreateWithdrawalRequest,
    ProcessWithdrawalRequest,
    UserRole,
    WithdrawalListResponse,
    WithdrawalResponse,
)
from app.models.domain import CurrentUser, WithdrawalData
from app.services.ledger import TokenLedger
from app.services.stripe_provider import StripeProvider
from app.services.withdrawals import WithdrawalService

router = APIRouter()


def withdrawal_response(request: WithdrawalData) -> WithdrawalResponse:
    return WithdrawalResponse(
        request_id=request.request_id,
        amount_usd=request.amount_usd,
        tokens_to_convert=request.tokens_to_convert,
        conversion_rate=request.conversion_rate,
        status=request.status,
        provider=request.provider,
        provider_transaction_id=request.provider_transaction_id,
        failure_reason=request.failure_reason,
        created_at=request.created_at.isoformat(),
        processed_at=request.processed_at.isoformat() if request.processed_at else None,
        completed_at=request.completed_at.isoformat() if request.completed_at else None,
    )


@router.post(
    "/api/withdrawals",
    response_model=WithdrawalResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_withdrawal(
    request: CreateWithdrawalRequest,
    user: CurrentUser = Depends(require_role(UserRole.TEACHER)),
    db: AsyncSession = Depends(get_write_db),
    ledger: TokenLedger = Depends(get_ledger),
) -> WithdrawalResponse:
    """
    Request a payout of earned tokens.

    The current payout rate is locked into the request.
    """
    service = WithdrawalService(db, ledger)

    try:
        created = await service.create_request(
            user,
            amount_usd=request.amount_usd,
            payment_method_id=request.payment_method_id,
            provider=request.provider,
        )
    except WalletNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Wallet not found",
        ) from exc
    except InsufficientTokensError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=str(exc),
        ) from exc
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return withdrawal_response(created)


@router.get("/api/withdrawals", response_model=WithdrawalListResponse)
async def list_withdrawals(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(require_role(UserRole.TEACHER)),
    db: AsyncSession = Depends(get_read_db),
) -> WithdrawalListResponse:
    service = WithdrawalService(db)
    requests = await service.list_requests(user.user_id, limit=limit, offset=offset)
    return WithdrawalListResponse(requests=[withdrawal_response(r) for r in requests])


@router.post("/api/withdrawals/{request_id}/cancel", response_model=WithdrawalResponse)
async def cancel_withdrawal(
    request_id: UUID,
    user: CurrentUser = Depends(require_role(UserRole.TEACHER)),
    db: AsyncSession = Depends(get_write_db),
    ledger: TokenLedger = Depends(get_ledger),
) -> WithdrawalResponse:
    """Cancel a request that has not started processing."""
    service = WithdrawalService(db, ledger)

    try:
        cancelled = await service.cancel_request(user, request_id)
    except WithdrawalNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Withdrawal request not found",
        ) from exc
    except InvalidWithdrawalStateError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc

    return withdrawal_response(cancelled)


@router.post("/api/process-withdrawal", response_model=WithdrawalResponse)
async def process_withdrawal(
    request: ProcessWithdrawalRequest,
    user: CurrentUser = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_write_db),
    ledger: TokenLedger = Depends(get_ledger),
    provider: StripeProvider = Depends(get_payment_provider),
) -> WithdrawalResponse:
    """
    Pay out a pending request.

    A rejected payout is reported in the returned request (status failed),
    not as an HTTP error.
    """
    service = WithdrawalService(db, ledger, provider)

    try:
        processed = await service.process_request(request.request_id)
    except WithdrawalNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Withdrawal request not found",
        ) from exc
    except InvalidWithdrawalStateError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable",
        ) from exc

    return withdrawal_response(processed)
