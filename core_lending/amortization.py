"""
Amortization Module

Equal-installment (French method) loan math. This is the single source of
monthly payment and total repayment figures: request display, acceptance
snapshot, contract document, completion check and payment reminders all
call into here.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import List, Optional
import calendar

from .currency import AmountLike, Currency, Money, parse_amount, quantize_amount
from .errors import ValidationError


@dataclass
class AmortizationEntry:
    """Single installment in an amortization schedule"""
    payment_number: int
    payment_date: date
    payment_amount: Money
    principal_amount: Money
    interest_amount: Money
    remaining_balance: Money

    def __post_init__(self):
        # Validate that payment equals principal + interest
        calculated_payment = self.principal_amount + self.interest_amount
        if abs(calculated_payment.amount - self.payment_amount.amount) > Decimal('0.01'):
            raise ValueError(f"Payment amount {self.payment_amount.to_string()} does not equal "
                             f"principal {self.principal_amount.to_string()} + "
                             f"interest {self.interest_amount.to_string()}")

    def to_dict(self) -> dict:
        return {
            'payment_number': self.payment_number,
            'payment_date': self.payment_date.isoformat(),
            'payment_amount': str(self.payment_amount.amount),
            'principal_amount': str(self.principal_amount.amount),
            'interest_amount': str(self.interest_amount.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'currency': self.payment_amount.currency.code
        }


@dataclass
class AmortizationSummary:
    """Headline figures for a loan plus its installment schedule"""
    principal: Money
    annual_rate_percent: Decimal
    duration_months: int
    monthly_payment: Money
    total_repayment: Money
    total_interest: Money
    schedule: List[AmortizationEntry] = field(default_factory=list)


def _validate_terms(principal: Decimal, annual_rate_percent: Decimal, months: int) -> None:
    if principal <= Decimal('0'):
        raise ValidationError("Principal must be positive")
    if annual_rate_percent < Decimal('0'):
        raise ValidationError("Interest rate cannot be negative")
    if not isinstance(months, int) or isinstance(months, bool) or months <= 0:
        raise ValidationError("Duration must be a positive whole number of months")


def compute_monthly_payment(principal: AmountLike, annual_rate_percent: AmountLike, months: int) -> Decimal:
    """
    Equal monthly installment for an amortizing loan.

    Standard formula: P * [r(1+r)^n] / [(1+r)^n - 1] with r = rate/100/12.
    A zero rate is flat division so the formula never divides by zero.

    Args:
        principal: Loan principal
        annual_rate_percent: Annual interest rate in percent (12 means 12%)
        months: Number of monthly installments

    Returns:
        Unrounded monthly payment
    """
    principal = parse_amount(principal)
    rate = parse_amount(annual_rate_percent)
    _validate_terms(principal, rate, months)

    if rate == Decimal('0'):
        return principal / Decimal(months)

    monthly_rate = rate / Decimal('100') / Decimal('12')
    factor = (Decimal('1') + monthly_rate) ** months
    return principal * (monthly_rate * factor) / (factor - Decimal('1'))


def compute_total_repayment(principal: AmountLike, annual_rate_percent: AmountLike, months: int) -> Decimal:
    """Total repaid over the loan: monthly payment * months (unrounded)"""
    return compute_monthly_payment(principal, annual_rate_percent, months) * Decimal(months)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def generate_schedule(
    principal: AmountLike,
    annual_rate_percent: AmountLike,
    months: int,
    first_payment_date: date,
    currency: Currency = Currency.INR
) -> List[AmortizationEntry]:
    """
    Generate the equal-installment schedule.

    Each installment is rounded to currency precision; the final installment
    absorbs the rounding residue so the balance lands exactly on zero.
    """
    principal = parse_amount(principal)
    rate = parse_amount(annual_rate_percent)
    payment = Money(compute_monthly_payment(principal, rate, months), currency)
    monthly_rate = rate / Decimal('100') / Decimal('12')

    schedule = []
    remaining_balance = Money(principal, currency)

    for payment_num in range(1, months + 1):
        interest_amount = remaining_balance * monthly_rate

        if payment_num == months:
            # Pay exactly what's left
            principal_amount = remaining_balance
        else:
            principal_amount = payment - interest_amount
            if principal_amount > remaining_balance:
                principal_amount = remaining_balance

        remaining_balance = remaining_balance - principal_amount

        schedule.append(AmortizationEntry(
            payment_number=payment_num,
            payment_date=add_months(first_payment_date, payment_num - 1),
            payment_amount=principal_amount + interest_amount,
            principal_amount=principal_amount,
            interest_amount=interest_amount,
            remaining_balance=remaining_balance
        ))

    return schedule


def summarize(
    principal: AmountLike,
    annual_rate_percent: AmountLike,
    months: int,
    first_payment_date: Optional[date] = None,
    currency: Currency = Currency.INR
) -> AmortizationSummary:
    """
    Monthly payment, total repayment and total interest rounded for display.
    The schedule is included when a first payment date is given.
    """
    principal = parse_amount(principal)
    rate = parse_amount(annual_rate_percent)
    monthly = compute_monthly_payment(principal, rate, months)
    total = monthly * Decimal(months)

    schedule = []
    if first_payment_date is not None:
        schedule = generate_schedule(principal, rate, months, first_payment_date, currency)

    return AmortizationSummary(
        principal=Money(principal, currency),
        annual_rate_percent=rate,
        duration_months=months,
        monthly_payment=Money(monthly, currency),
        total_repayment=Money(total, currency),
        total_interest=Money(quantize_amount(total, currency) - quantize_amount(principal, currency), currency),
        schedule=schedule
    )
