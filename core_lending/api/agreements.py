"""
Loan agreement endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Query, Response, status

from .dependencies import get_current_user, get_lending_system, to_http_exception
from .schemas import (
    CreateLoanOfferBody, CreateLoanRequestBody, RejectBody,
    agreement_list_response, agreement_response, summary_response, transaction_response
)
from ..agreements import UserIdentity
from ..errors import LendingError
from ..system import LendingSystem


router = APIRouter()


def _visible_agreement(system: LendingSystem, agreement_id: str, user: UserIdentity):
    """Open requests are visible to everyone, everything else only to its parties"""
    agreement = system.agreement_manager.get_agreement(agreement_id)
    if not agreement:
        raise HTTPException(status_code=404, detail="Loan agreement not found")
    invited = agreement.invitation and user.email and \
        agreement.invitation.get('email', '').lower() == user.email.lower()
    if not (agreement.is_open_request or agreement.is_party(user.id) or invited):
        raise HTTPException(status_code=403, detail="Not a party to this agreement")
    return agreement


@router.post("/requests", status_code=status.HTTP_201_CREATED)
async def create_loan_request(
    request: CreateLoanRequestBody,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Post a loan request open to any lender"""
    try:
        agreement = system.agreement_manager.create_request(
            borrower=user,
            amount=request.amount,
            purpose=request.purpose,
            duration_months=request.duration_months,
            interest_rate=request.interest_rate,
            extra_fields=request.extra_fields,
            idempotency_key=request.idempotency_key,
            payment_method=request.payment_method
        )
        return agreement_response(agreement)
    except LendingError as e:
        raise to_http_exception(e)


@router.post("/offers", status_code=status.HTTP_201_CREATED)
async def create_loan_offer(
    request: CreateLoanOfferBody,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Offer a loan directly to a borrower, inviting them if they have no account"""
    try:
        agreement = system.agreement_manager.create_offer(
            lender=user,
            borrower=request.borrower.to_borrower(),
            amount=request.amount,
            interest_rate=request.interest_rate,
            duration_months=request.duration_months,
            purpose=request.purpose,
            payment_method=request.payment_method,
            smart_contract=request.smart_contract,
            conditions=request.conditions,
            idempotency_key=request.idempotency_key
        )
        return agreement_response(agreement)
    except LendingError as e:
        raise to_http_exception(e)


@router.get("")
async def list_my_agreements(
    role: Optional[str] = None,
    agreement_status: Optional[str] = Query(None, alias="status"),
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Agreements where the caller is borrower and/or lender"""
    try:
        agreements = system.queries.list_agreements_for_user(user.id, role=role, status=agreement_status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return agreement_list_response(agreements)


@router.get("/{agreement_id}")
async def get_agreement(
    agreement_id: str,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Get agreement details"""
    return agreement_response(_visible_agreement(system, agreement_id, user))


@router.get("/{agreement_id}/schedule")
async def get_repayment_schedule(
    agreement_id: str,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Monthly payment, totals, and the installment schedule once accepted"""
    agreement = _visible_agreement(system, agreement_id, user)
    return summary_response(agreement.amortization())


@router.get("/{agreement_id}/transactions")
async def get_agreement_transactions(
    agreement_id: str,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Settlement history of an agreement"""
    agreement = _visible_agreement(system, agreement_id, user)
    transactions = system.dispatcher.get_agreement_transactions(agreement.id)
    return {
        "agreement_id": agreement.id,
        "transactions": [transaction_response(t) for t in transactions],
        "total_repaid": system.dispatcher.total_repaid(agreement.id, agreement.amount.currency).to_string()
    }


@router.get("/{agreement_id}/contract")
async def get_contract(
    agreement_id: str,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Contract document generated on acceptance"""
    agreement = _visible_agreement(system, agreement_id, user)
    document = system.contract_generator.get_contract(agreement.id)
    if not document:
        raise HTTPException(status_code=404, detail="No contract has been generated for this agreement")
    return {
        "id": document.id,
        "agreement_id": document.agreement_id,
        "file_name": document.file_name,
        "content_hash": document.content_hash,
        "content": document.content,
        "created_at": document.created_at.isoformat()
    }


@router.post("/{agreement_id}/claim")
async def claim_request(
    agreement_id: str,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Fund an open loan request"""
    try:
        return agreement_response(system.agreement_manager.claim(agreement_id, user))
    except LendingError as e:
        raise to_http_exception(e)


@router.post("/{agreement_id}/accept")
async def accept_agreement(
    agreement_id: str,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Borrower accepts and the loan becomes active"""
    try:
        return agreement_response(system.agreement_manager.accept(agreement_id, user))
    except LendingError as e:
        raise to_http_exception(e)


@router.post("/{agreement_id}/reject")
async def reject_agreement(
    agreement_id: str,
    request: Optional[RejectBody] = None,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Borrower declines the agreement"""
    try:
        reason = request.reason if request else None
        return agreement_response(system.agreement_manager.reject(agreement_id, user, reason=reason))
    except LendingError as e:
        raise to_http_exception(e)


@router.post("/{agreement_id}/complete")
async def complete_agreement(
    agreement_id: str,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Close an active loan"""
    try:
        return agreement_response(system.agreement_manager.complete(agreement_id, user))
    except LendingError as e:
        raise to_http_exception(e)


@router.delete("/{agreement_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_request(
    agreement_id: str,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Withdraw an unclaimed loan request"""
    try:
        system.agreement_manager.cancel(agreement_id, user)
    except LendingError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
