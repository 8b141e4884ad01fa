"""
Ledger records.

Every record is a frozen dataclass owned by a single user. The owning user
is not part of the record; the store attaches it. ``amount``, ``currency``
and ``occurred_on`` are available on every variant so the aggregator can
treat them uniformly.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal, InvalidOperation
import secrets
import time
from typing import ClassVar, Optional, Union

from fintrack.currency_conversion import (
    ExchangeRate,
    normalize_currency,
    validate_exchange_rate,
)
from fintrack.errors import ConversionError, ValidationError

ZERO = Decimal("0")
OTHER_CATEGORY = "Other"

# Precision and magnitude accepted by the storage columns.
CENT = Decimal("0.01")
RATE_STEP = Decimal("0.000001")
INTEREST_STEP = Decimal("0.001")
MAX_AMOUNT = Decimal("1E10")
MAX_RECEIVED_AMOUNT = Decimal("1E12")
MAX_RATE = Decimal("1E8")
MAX_INTEREST_RATE = Decimal("1000")


class RecordKind:
    INCOME = "income"
    MONTHLY_EXPENSE = "monthly_expense"
    LOAN = "loan"
    LOAN_PAYMENT = "loan_payment"
    TRANSFER = "transfer"
    SCHEDULED_PAYMENT = "scheduled_payment"

    values = {INCOME, MONTHLY_EXPENSE, LOAN, LOAN_PAYMENT, TRANSFER, SCHEDULED_PAYMENT}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower().replace("-", "_")
        if normalized.endswith("s") and normalized[:-1] in cls.values:
            normalized = normalized[:-1]
        if normalized not in cls.values:
            raise ValidationError(f"Invalid record kind: {value}")
        return normalized


class LoanStatus:
    ACTIVE = "active"
    PAID_OFF = "paid_off"
    values = {ACTIVE, PAID_OFF}


class TransferStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    values = {PENDING, COMPLETED, FAILED}


class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    values = {PENDING, PAID}


class Frequency:
    values = {"once", "weekly", "monthly", "quarterly", "yearly"}

    @classmethod
    def validate(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if not normalized:
            return None
        if normalized not in cls.values:
            raise ValidationError("Invalid frequency.")
        return normalized


@dataclass(frozen=True)
class Income:
    kind: ClassVar[str] = RecordKind.INCOME

    source: str
    amount: Decimal
    currency: str
    occurred_on: date
    category: Optional[str] = None
    description: Optional[str] = None
    is_recurring: bool = False
    recurring_frequency: Optional[str] = None
    exchange_rate_at_entry: Optional[Decimal] = None
    rate_currency: Optional[str] = None
    id: Optional[int] = None

    @property
    def historical_rate(self) -> ExchangeRate | None:
        return _stored_rate(self.currency, self.rate_currency, self.exchange_rate_at_entry)


@dataclass(frozen=True)
class MonthlyExpense:
    kind: ClassVar[str] = RecordKind.MONTHLY_EXPENSE

    description: str
    amount: Decimal
    currency: str
    occurred_on: date
    category: Optional[str] = None
    payment_method: Optional[str] = None
    exchange_rate_at_entry: Optional[Decimal] = None
    rate_currency: Optional[str] = None
    id: Optional[int] = None

    @property
    def historical_rate(self) -> ExchangeRate | None:
        return _stored_rate(self.currency, self.rate_currency, self.exchange_rate_at_entry)


@dataclass(frozen=True)
class LoanBalance:
    kind: ClassVar[str] = RecordKind.LOAN

    name: str
    principal: Decimal
    current_balance: Decimal
    currency: str
    occurred_on: date
    interest_rate: Decimal = ZERO
    status: str = LoanStatus.ACTIVE
    lender: Optional[str] = None
    loan_type: Optional[str] = None
    monthly_payment: Optional[Decimal] = None
    end_date: Optional[date] = None
    category: Optional[str] = None
    id: Optional[int] = None

    @property
    def amount(self) -> Decimal:
        return self.current_balance

    @property
    def historical_rate(self) -> None:
        return None


@dataclass(frozen=True)
class LoanPayment:
    kind: ClassVar[str] = RecordKind.LOAN_PAYMENT

    loan_id: int
    principal_amount: Decimal
    interest_amount: Decimal
    currency: str
    occurred_on: date
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    category: Optional[str] = None
    id: Optional[int] = None

    @property
    def amount(self) -> Decimal:
        return self.principal_amount + self.interest_amount

    @property
    def historical_rate(self) -> None:
        return None


@dataclass(frozen=True)
class Transfer:
    kind: ClassVar[str] = RecordKind.TRANSFER

    recipient_name: str
    recipient_country: str
    amount_sent: Decimal
    currency: str
    amount_received: Decimal
    currency_received: str
    exchange_rate: Decimal
    occurred_on: date
    fee_amount: Decimal = ZERO
    status: str = TransferStatus.PENDING
    transfer_method: Optional[str] = None
    purpose: Optional[str] = None
    reference_number: Optional[str] = None
    completion_date: Optional[date] = None
    category: Optional[str] = None
    id: Optional[int] = None

    @property
    def amount(self) -> Decimal:
        return self.amount_sent

    @property
    def historical_rate(self) -> ExchangeRate:
        return ExchangeRate(self.currency, self.currency_received, self.exchange_rate)


@dataclass(frozen=True)
class ScheduledPayment:
    kind: ClassVar[str] = RecordKind.SCHEDULED_PAYMENT

    name: str
    amount: Decimal
    currency: str
    due_date: date
    category: Optional[str] = None
    recipient: Optional[str] = None
    frequency: Optional[str] = None
    is_recurring: bool = False
    auto_pay: bool = False
    status: str = PaymentStatus.PENDING
    reminder_days: int = 3
    notes: Optional[str] = None
    id: Optional[int] = None

    @property
    def occurred_on(self) -> date:
        return self.due_date

    @property
    def historical_rate(self) -> None:
        return None


MoneyRecord = Union[Income, MonthlyExpense, LoanBalance, LoanPayment, Transfer, ScheduledPayment]

RECORD_TYPES: dict[str, type] = {
    RecordKind.INCOME: Income,
    RecordKind.MONTHLY_EXPENSE: MonthlyExpense,
    RecordKind.LOAN: LoanBalance,
    RecordKind.LOAN_PAYMENT: LoanPayment,
    RecordKind.TRANSFER: Transfer,
    RecordKind.SCHEDULED_PAYMENT: ScheduledPayment,
}


def category_of(record: MoneyRecord) -> str:
    category = (record.category or "").strip()
    return category or OTHER_CATEGORY


def generate_reference_number() -> str:
    stamp = _base36(int(time.time() * 1000))
    return "TXN" + stamp + secrets.token_hex(3).upper()[:5]


def validate_record(record: MoneyRecord) -> MoneyRecord:
    """Return a normalized copy of ``record`` or raise ``ValidationError``."""
    validator = _VALIDATORS.get(type(record))
    if validator is None:
        raise ValidationError(f"Unsupported record type: {type(record).__name__}")
    try:
        return validator(record)
    except ConversionError as exc:
        raise ValidationError(str(exc)) from exc


def _validate_income(record: Income) -> Income:
    source = _required_text(record.source, "Income source required.")
    currency = normalize_currency(record.currency)
    rate, rate_currency = _validate_stored_rate(
        currency, record.exchange_rate_at_entry, record.rate_currency
    )
    frequency = Frequency.validate(record.recurring_frequency) if record.is_recurring else None
    return replace(
        record,
        source=source,
        amount=_positive(record.amount, "Amount must be greater than zero."),
        currency=currency,
        category=_optional_text(record.category),
        description=_optional_text(record.description),
        recurring_frequency=frequency,
        exchange_rate_at_entry=rate,
        rate_currency=rate_currency,
    )


def _validate_monthly_expense(record: MonthlyExpense) -> MonthlyExpense:
    description = _required_text(record.description, "Expense description required.")
    currency = normalize_currency(record.currency)
    rate, rate_currency = _validate_stored_rate(
        currency, record.exchange_rate_at_entry, record.rate_currency
    )
    return replace(
        record,
        description=description,
        amount=_positive(record.amount, "Amount must be greater than zero."),
        currency=currency,
        category=_optional_text(record.category),
        payment_method=_optional_text(record.payment_method),
        exchange_rate_at_entry=rate,
        rate_currency=rate_currency,
    )


def _validate_loan(record: LoanBalance) -> LoanBalance:
    name = _required_text(record.name, "Loan name required.")
    principal = _positive(record.principal, "Principal must be greater than zero.")
    balance = _money(record.current_balance, "Current balance must be a number.")
    if balance < ZERO:
        raise ValidationError("Current balance cannot be negative.")
    if balance > principal:
        raise ValidationError("Current balance cannot exceed the principal.")
    interest_rate = _fixed_point(
        _decimal(record.interest_rate, "Interest rate must be a number."),
        "Interest rate",
        INTEREST_STEP,
        MAX_INTEREST_RATE,
    )
    if interest_rate < ZERO:
        raise ValidationError("Interest rate cannot be negative.")
    monthly_payment = None
    if record.monthly_payment is not None:
        monthly_payment = _money(record.monthly_payment, "Monthly payment must be a number.")
        if monthly_payment < ZERO:
            raise ValidationError("Monthly payment cannot be negative.")
    if record.end_date is not None and record.end_date < record.occurred_on:
        raise ValidationError("Loan end date must be on or after the start date.")
    return replace(
        record,
        name=name,
        principal=principal,
        current_balance=balance,
        currency=normalize_currency(record.currency),
        interest_rate=interest_rate,
        monthly_payment=monthly_payment,
        status=LoanStatus.PAID_OFF if balance == ZERO else LoanStatus.ACTIVE,
        lender=_optional_text(record.lender),
        loan_type=_optional_text(record.loan_type),
    )


def _validate_loan_payment(record: LoanPayment) -> LoanPayment:
    principal = _money(record.principal_amount, "Principal amount must be a number.")
    interest = _money(record.interest_amount, "Interest amount must be a number.")
    if principal < ZERO or interest < ZERO:
        raise ValidationError("Payment amounts cannot be negative.")
    if principal + interest <= ZERO:
        raise ValidationError("Payment amount must be greater than 0.")
    return replace(
        record,
        principal_amount=principal,
        interest_amount=interest,
        currency=normalize_currency(record.currency),
        payment_method=_optional_text(record.payment_method),
        notes=_optional_text(record.notes),
    )


def _validate_transfer(record: Transfer) -> Transfer:
    recipient_name = _required_text(record.recipient_name, "Recipient name required.")
    recipient_country = _required_text(record.recipient_country, "Recipient country required.")
    sent_currency = normalize_currency(record.currency)
    received_currency = normalize_currency(record.currency_received)
    rate = _rate(
        validate_exchange_rate(record.exchange_rate, sent_currency, received_currency)
    )
    fee = _money(record.fee_amount, "Transfer fee must be a number.")
    if fee < ZERO:
        raise ValidationError("Transfer fee cannot be negative.")
    status = record.status.strip().lower()
    if status not in TransferStatus.values:
        raise ValidationError("Invalid transfer status.")
    completion_date = record.completion_date
    if status == TransferStatus.COMPLETED and completion_date is None:
        completion_date = record.occurred_on
    return replace(
        record,
        recipient_name=recipient_name,
        recipient_country=recipient_country,
        amount_sent=_positive(record.amount_sent, "Amount sent must be greater than zero."),
        amount_received=_positive(
            record.amount_received,
            "Amount received must be greater than zero.",
            limit=MAX_RECEIVED_AMOUNT,
        ),
        currency=sent_currency,
        currency_received=received_currency,
        exchange_rate=rate,
        fee_amount=fee,
        status=status,
        completion_date=completion_date,
        reference_number=_optional_text(record.reference_number) or generate_reference_number(),
        transfer_method=_optional_text(record.transfer_method),
        purpose=_optional_text(record.purpose),
    )


def _validate_scheduled_payment(record: ScheduledPayment) -> ScheduledPayment:
    name = _required_text(record.name, "Payment name required.")
    status = record.status.strip().lower()
    if status not in PaymentStatus.values:
        raise ValidationError("Invalid payment status.")
    if record.reminder_days < 0:
        raise ValidationError("Reminder days cannot be negative.")
    frequency = Frequency.validate(record.frequency) or "once"
    return replace(
        record,
        name=name,
        amount=_positive(record.amount, "Amount must be greater than zero."),
        currency=normalize_currency(record.currency),
        category=_optional_text(record.category),
        recipient=_optional_text(record.recipient),
        frequency=frequency,
        is_recurring=frequency != "once",
        status=status,
        notes=_optional_text(record.notes),
    )


_VALIDATORS = {
    Income: _validate_income,
    MonthlyExpense: _validate_monthly_expense,
    LoanBalance: _validate_loan,
    LoanPayment: _validate_loan_payment,
    Transfer: _validate_transfer,
    ScheduledPayment: _validate_scheduled_payment,
}


def _validate_stored_rate(
    currency: str, rate: Decimal | None, rate_currency: str | None
) -> tuple[Decimal | None, str | None]:
    if rate is None:
        return None, None
    if not rate_currency:
        raise ValidationError("A stored exchange rate requires its quote currency.")
    quote = normalize_currency(rate_currency)
    if quote == currency:
        return None, None
    return _rate(validate_exchange_rate(rate, currency, quote)), quote


def _stored_rate(
    currency: str, rate_currency: str | None, rate: Decimal | None
) -> ExchangeRate | None:
    if rate is None or not rate_currency:
        return None
    return ExchangeRate(currency, rate_currency, rate)


def _decimal(value: Decimal | int | float | str | None, message: str) -> Decimal:
    if value is None:
        raise ValidationError(message)
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation as exc:
            raise ValidationError(message) from exc
    if not result.is_finite():
        raise ValidationError(message)
    return result


def _fixed_point(value: Decimal, label: str, step: Decimal, limit: Decimal) -> Decimal:
    if abs(value) >= limit:
        raise ValidationError(f"{label} is too large.")
    quantized = value.quantize(step)
    if quantized != value:
        raise ValidationError(f"{label} has too many decimal places.")
    return quantized


def _money(
    value: Decimal | int | float | str | None,
    message: str,
    limit: Decimal = MAX_AMOUNT,
) -> Decimal:
    return _fixed_point(_decimal(value, message), "Amount", CENT, limit)


def _rate(value: Decimal) -> Decimal:
    return _fixed_point(value, "Exchange rate", RATE_STEP, MAX_RATE)


def _positive(
    value: Decimal | int | float | str | None,
    message: str,
    limit: Decimal = MAX_AMOUNT,
) -> Decimal:
    result = _money(value, message, limit)
    if result <= ZERO:
        raise ValidationError(message)
    return result


def _required_text(value: str | None, message: str) -> str:
    cleaned = value.strip() if value else ""
    if not cleaned:
        raise ValidationError(message)
    return cleaned


def _optional_text(value: str | None) -> str | None:
    cleaned = value.strip() if value else ""
    return cleaned or None


def _base36(value: int) -> str:
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    encoded = ""
    while value:
        value, remainder = divmod(value, 36)
        encoded = digits[remainder] + encoded
    return encoded or "0"

