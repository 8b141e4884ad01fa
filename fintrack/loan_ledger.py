"""
Loan balance bookkeeping.

Only the principal part of a payment moves a loan's balance; interest is
tracked separately. Every operation returns a new ``LoanBalance`` whose
status is re-derived from the balance, so ``paid_off`` holds exactly when
the balance is zero.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
import logging
from typing import Iterable, Mapping

from fintrack.currency_conversion import ConversionService, RateSource
from fintrack.errors import ValidationError
from fintrack.records import ZERO, LoanBalance, LoanPayment, LoanStatus

logger = logging.getLogger(__name__)


def open_loan(loan: LoanBalance) -> LoanBalance:
    return _with_balance(loan, loan.principal)


def apply_payment(loan: LoanBalance, payment: LoanPayment) -> LoanBalance:
    _check_payment_belongs(loan, payment)
    principal = payment.principal_amount
    if principal > loan.current_balance:
        raise ValidationError("Principal payment cannot exceed current loan balance.")
    return _with_balance(loan, loan.current_balance - principal)


def revise_payment(
    loan: LoanBalance, previous: LoanPayment, revised: LoanPayment
) -> LoanBalance:
    _check_payment_belongs(loan, previous)
    _check_payment_belongs(loan, revised)
    difference = revised.principal_amount - previous.principal_amount
    new_balance = loan.current_balance - difference
    if new_balance < ZERO:
        raise ValidationError("Updated principal would make the loan balance negative.")
    if new_balance > loan.principal:
        raise ValidationError("Updated principal would raise the balance above the principal.")
    return _with_balance(loan, new_balance)


def remove_payment(loan: LoanBalance, payment: LoanPayment) -> LoanBalance:
    _check_payment_belongs(loan, payment)
    restored = loan.current_balance + payment.principal_amount
    return _with_balance(loan, min(restored, loan.principal))


def edit_loan(
    loan: LoanBalance,
    *,
    principal: Decimal | None = None,
    current_balance: Decimal | None = None,
) -> LoanBalance:
    new_principal = loan.principal if principal is None else principal
    new_balance = loan.current_balance if current_balance is None else current_balance
    if new_principal <= ZERO:
        raise ValidationError("Principal must be greater than zero.")
    if new_balance < ZERO:
        raise ValidationError("Current balance cannot be negative.")
    if new_balance > new_principal:
        raise ValidationError("Current balance cannot exceed the principal.")
    return _with_balance(replace(loan, principal=new_principal), new_balance)


def derive_status(balance: Decimal) -> str:
    return LoanStatus.PAID_OFF if balance == ZERO else LoanStatus.ACTIVE


def total_interest_paid(
    payments: Iterable[LoanPayment],
    loans_by_id: Mapping[int, LoanBalance],
    service: ConversionService,
    currency: str,
) -> Decimal:
    total = ZERO
    for payment in payments:
        loan = loans_by_id.get(payment.loan_id)
        source_currency = loan.currency if loan is not None else payment.currency
        total += service.convert(
            payment.interest_amount,
            source_currency,
            currency,
            rate_source=RateSource.LIVE,
        ).amount
    return total


def _with_balance(loan: LoanBalance, balance: Decimal) -> LoanBalance:
    if balance < ZERO:
        raise ValidationError("Loan balance cannot be negative.")
    status = derive_status(balance)
    if status != loan.status:
        logger.info("Loan %s status %s -> %s", loan.id, loan.status, status)
    return replace(loan, current_balance=balance, status=status)


def _check_payment_belongs(loan: LoanBalance, payment: LoanPayment) -> None:
    if loan.id is not None and payment.loan_id != loan.id:
        raise ValidationError("Payment does not belong to this loan.")
