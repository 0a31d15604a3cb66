"""
Payment settlement and payment method endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import get_current_user, get_lending_system, to_http_exception
from .schemas import PaymentBody, ReconcileBody, transaction_response
from ..agreements import UserIdentity
from ..errors import LendingError
from ..payment_methods import parse_payment_method
from ..settlement import TransactionType
from ..system import LendingSystem


router = APIRouter()
methods_router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def process_payment(
    request: PaymentBody,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Settle a disbursement or repayment on an active agreement"""
    try:
        transaction_type = TransactionType(request.transaction_type) if request.transaction_type else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown transaction type: {request.transaction_type}")

    try:
        result = system.pay(
            agreement_id=request.agreement_id,
            payer=user,
            amount=request.amount,
            method=request.method,
            metadata=request.metadata,
            transaction_type=transaction_type,
            idempotency_key=request.idempotency_key,
            reference=request.reference
        )
    except LendingError as e:
        raise to_http_exception(e)

    if not result.success:
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=result.to_dict())
    return result.to_dict()


@router.get("/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Get transaction details"""
    transaction = system.dispatcher.get_transaction(transaction_id)
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found")
    if user.id not in (transaction.payer_id, transaction.recipient_id):
        raise HTTPException(status_code=403, detail="Not a party to this transaction")
    return transaction_response(transaction)


@router.post("/{transaction_id}/reconcile")
async def reconcile_transaction(
    transaction_id: str,
    request: ReconcileBody,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Finalize a pending bank or crypto transfer once the outcome is known"""
    if user.id not in system.cfg.reconciler_id_set():
        raise HTTPException(status_code=403, detail="Only the reconciliation service can finalize transactions")
    try:
        transaction = system.dispatcher.update_transaction_status(
            transaction_id, request.status, actor_id=user.id
        )
    except LendingError as e:
        raise to_http_exception(e)
    return transaction_response(transaction)


@methods_router.get("")
async def list_payment_methods(system: LendingSystem = Depends(get_lending_system)):
    """Capabilities of every settlement method"""
    return {
        "payment_methods": [c.to_dict() for c in system.dispatcher.capabilities.values()]
    }


@methods_router.get("/{method}")
async def get_payment_method(method: str, system: LendingSystem = Depends(get_lending_system)):
    """Capability of one settlement method"""
    try:
        payment_method = parse_payment_method(method)
    except LendingError:
        raise HTTPException(status_code=404, detail=f"Unknown payment method: {method}")
    return system.dispatcher.capabilities[payment_method].to_dict()
