from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
import logging
from typing import Iterable, Optional

from fintrack.currency_conversion import (
    ConversionService,
    RateSource,
    normalize_currency,
    quantize_amount,
)
from fintrack.errors import ConversionError, PartialAggregationWarning, ValidationError
from fintrack.periods import DateRange, iter_months
from fintrack.records import (
    ZERO,
    Income,
    LoanBalance,
    LoanPayment,
    MoneyRecord,
    MonthlyExpense,
    PaymentStatus,
    ScheduledPayment,
    Transfer,
    TransferStatus,
    category_of,
)

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
TRANSFERS_CATEGORY = "International Transfers"
LOAN_PAYMENTS_CATEGORY = "Loan Payments"


@dataclass(frozen=True)
class ConvertedRecord:
    record: MoneyRecord
    amount: Decimal
    rate: Decimal
    fee: Decimal = ZERO
    used_fallback: bool = False


@dataclass(frozen=True)
class ConversionBatch:
    records: list[ConvertedRecord]
    skipped_reasons: list[str] = field(default_factory=list)
    used_fallback_rate: bool = False

    @property
    def skipped_records(self) -> int:
        return len(self.skipped_reasons)


@dataclass(frozen=True)
class KindTotals:
    income: Decimal = ZERO
    debt: Decimal = ZERO
    transfers: Decimal = ZERO
    expenses: Decimal = ZERO
    loan_payments: Decimal = ZERO
    transfer_fees: Decimal = ZERO

    @property
    def outflows(self) -> Decimal:
        return self.expenses + self.transfers + self.loan_payments


@dataclass(frozen=True)
class CategoryShare:
    category: str
    amount: Decimal
    percentage: Decimal


@dataclass(frozen=True)
class LoanProgress:
    loan_id: Optional[int]
    name: str
    status: str
    principal: Decimal
    current_balance: Decimal
    progress_percent: Decimal


@dataclass(frozen=True)
class MonthlyTrend:
    month: date
    income: Decimal
    expenses: Decimal

    @property
    def net(self) -> Decimal:
        return self.income - self.expenses


@dataclass(frozen=True)
class TransferSummary:
    total_sent: Decimal
    total_fees: Decimal
    pending_count: int
    completed_count: int
    failed_count: int
    average_rates: dict[str, Decimal]
    sent_by_country: dict[str, Decimal]


@dataclass(frozen=True)
class PaymentScheduleSummary:
    pending_total: Decimal
    pending_count: int
    overdue_count: int
    due_soon_count: int
    auto_pay_count: int


@dataclass(frozen=True)
class ReportingSnapshot:
    currency: str
    window: Optional[DateRange]
    totals: KindTotals
    net_position: Decimal
    categories: list[CategoryShare]
    loans: list[LoanProgress]
    average_loan_progress: Decimal
    savings_rate: Decimal
    debt_to_income_ratio: Decimal
    skipped_records: int = 0
    used_fallback_rate: bool = False
    warning: Optional[PartialAggregationWarning] = None


def rate_source_for(record: MoneyRecord) -> RateSource:
    """Stored rates win for past activity; balances and due amounts use today's rate."""
    if isinstance(record, Transfer):
        return RateSource.HISTORICAL
    if isinstance(record, (Income, MonthlyExpense)) and record.historical_rate is not None:
        return RateSource.HISTORICAL
    return RateSource.LIVE


def convert_record(
    record: MoneyRecord, service: ConversionService, currency: str
) -> ConvertedRecord:
    rate_source = rate_source_for(record)
    conversion = service.convert(
        record.amount,
        record.currency,
        currency,
        rate_source=rate_source,
        historical_rate=record.historical_rate,
    )
    fee = ZERO
    if isinstance(record, Transfer) and record.fee_amount:
        fee = service.convert(
            record.fee_amount,
            record.currency,
            currency,
            rate_source=rate_source,
            historical_rate=record.historical_rate,
        ).amount
    return ConvertedRecord(
        record=record,
        amount=conversion.amount,
        rate=conversion.rate,
        fee=fee,
        used_fallback=conversion.used_fallback,
    )


def convert_records(
    records: Iterable[MoneyRecord], service: ConversionService, currency: str
) -> ConversionBatch:
    """Convert every record, skipping the ones whose currency cannot be converted."""
    target = normalize_currency(currency)
    converted: list[ConvertedRecord] = []
    skipped: list[str] = []
    used_fallback = False
    for record in records:
        try:
            item = convert_record(record, service, target)
        except ConversionError as exc:
            reason = f"{record.kind} {record.id}: {exc}"
            logger.warning("Skipping record during aggregation: %s", reason)
            skipped.append(reason)
            continue
        used_fallback = used_fallback or item.used_fallback
        converted.append(item)
    return ConversionBatch(
        records=converted,
        skipped_reasons=skipped,
        used_fallback_rate=used_fallback,
    )


def filter_window(records: Iterable[MoneyRecord], window: DateRange | None) -> list[MoneyRecord]:
    if window is None:
        return list(records)
    return [
        record
        for record in records
        if isinstance(record, LoanBalance) or window.contains(record.occurred_on)
    ]


def total_by_kind(converted: Iterable[ConvertedRecord]) -> KindTotals:
    income = debt = transfers = expenses = loan_payments = fees = ZERO
    for item in converted:
        record = item.record
        if isinstance(record, Income):
            income += item.amount
        elif isinstance(record, LoanBalance):
            debt += item.amount
        elif isinstance(record, Transfer):
            transfers += item.amount
            fees += item.fee
        elif isinstance(record, (MonthlyExpense, ScheduledPayment)):
            expenses += item.amount
        elif isinstance(record, LoanPayment):
            loan_payments += item.amount
    return KindTotals(
        income=income,
        debt=debt,
        transfers=transfers,
        expenses=expenses,
        loan_payments=loan_payments,
        transfer_fees=fees,
    )


def categorize(converted: Iterable[ConvertedRecord]) -> list[tuple[str, Decimal]]:
    """Signed category amounts: income is positive, money going out is negative."""
    entries: list[tuple[str, Decimal]] = []
    for item in converted:
        record = item.record
        if isinstance(record, Income):
            entries.append((category_of(record), item.amount))
        elif isinstance(record, (MonthlyExpense, ScheduledPayment)):
            entries.append((category_of(record), -item.amount))
        elif isinstance(record, Transfer):
            entries.append((record.category or TRANSFERS_CATEGORY, -item.amount))
        elif isinstance(record, LoanPayment):
            entries.append((record.category or LOAN_PAYMENTS_CATEGORY, -item.amount))
    return entries


def category_breakdown(
    entries: Iterable[tuple[Optional[str], Decimal]],
    total_income: Decimal,
    top_n: int | None = None,
) -> list[CategoryShare]:
    if top_n is not None and top_n <= 0:
        raise ValidationError("top_n must be greater than zero.")

    totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for category, amount in entries:
        name = (category or "").strip() or "Other"
        totals[name] += amount

    shares = [
        CategoryShare(
            category=name,
            amount=amount,
            percentage=_percentage(abs(amount), total_income),
        )
        for name, amount in totals.items()
    ]
    shares.sort(key=lambda share: (-abs(share.amount), share.category))
    if top_n is not None:
        shares = shares[:top_n]
    return shares


def loan_progress(loan: LoanBalance) -> Decimal:
    if loan.principal == ZERO:
        return ZERO
    return (loan.principal - loan.current_balance) / loan.principal * HUNDRED


def net_position(totals: KindTotals) -> Decimal:
    return totals.income - totals.debt - totals.expenses


def monthly_trends(
    converted: Iterable[ConvertedRecord], window: DateRange
) -> list[MonthlyTrend]:
    income_by_month: dict[date, Decimal] = defaultdict(lambda: ZERO)
    outflow_by_month: dict[date, Decimal] = defaultdict(lambda: ZERO)
    for item in converted:
        record = item.record
        if isinstance(record, LoanBalance) or not window.contains(record.occurred_on):
            continue
        month = record.occurred_on.replace(day=1)
        if isinstance(record, Income):
            income_by_month[month] += item.amount
        else:
            outflow_by_month[month] += item.amount

    return [
        MonthlyTrend(
            month=month,
            income=income_by_month[month],
            expenses=outflow_by_month[month],
        )
        for month in iter_months(window.start, window.last_day)
    ]


def transfer_summary(converted: Iterable[ConvertedRecord]) -> TransferSummary:
    total_sent = total_fees = ZERO
    statuses: dict[str, int] = defaultdict(int)
    rate_sums: dict[str, Decimal] = defaultdict(lambda: ZERO)
    rate_counts: dict[str, int] = defaultdict(int)
    by_country: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for item in converted:
        record = item.record
        if not isinstance(record, Transfer):
            continue
        total_sent += item.amount
        total_fees += item.fee
        statuses[record.status] += 1
        pair = f"{record.currency}->{record.currency_received}"
        rate_sums[pair] += record.exchange_rate
        rate_counts[pair] += 1
        by_country[record.recipient_country] += item.amount

    return TransferSummary(
        total_sent=total_sent,
        total_fees=total_fees,
        pending_count=statuses[TransferStatus.PENDING],
        completed_count=statuses[TransferStatus.COMPLETED],
        failed_count=statuses[TransferStatus.FAILED],
        average_rates={
            pair: rate_sums[pair] / rate_counts[pair] for pair in sorted(rate_sums)
        },
        sent_by_country=dict(by_country),
    )


def payment_schedule_summary(
    converted: Iterable[ConvertedRecord], today: date
) -> PaymentScheduleSummary:
    pending_total = ZERO
    pending = overdue = due_soon = auto_pay = 0
    for item in converted:
        record = item.record
        if not isinstance(record, ScheduledPayment):
            continue
        if record.auto_pay:
            auto_pay += 1
        if record.status != PaymentStatus.PENDING:
            continue
        pending += 1
        pending_total += item.amount
        if record.due_date < today:
            overdue += 1
        elif record.due_date <= today + timedelta(days=record.reminder_days):
            due_soon += 1
    return PaymentScheduleSummary(
        pending_total=pending_total,
        pending_count=pending,
        overdue_count=overdue,
        due_soon_count=due_soon,
        auto_pay_count=auto_pay,
    )


def build_snapshot(
    records: Iterable[MoneyRecord],
    service: ConversionService,
    currency: str,
    window: DateRange | None = None,
    top_n: int | None = None,
) -> ReportingSnapshot:
    target = normalize_currency(currency)
    batch = convert_records(filter_window(records, window), service, target)
    totals = total_by_kind(batch.records)
    categories = category_breakdown(categorize(batch.records), totals.income, top_n=top_n)

    loans: list[LoanProgress] = []
    total_principal = ZERO
    for item in batch.records:
        record = item.record
        if not isinstance(record, LoanBalance):
            continue
        converted_principal = (
            record.principal if item.rate == 1 else quantize_amount(record.principal * item.rate)
        )
        total_principal += converted_principal
        loans.append(
            LoanProgress(
                loan_id=record.id,
                name=record.name,
                status=record.status,
                principal=converted_principal,
                current_balance=item.amount,
                progress_percent=loan_progress(record),
            )
        )

    warning = None
    if batch.skipped_records:
        warning = PartialAggregationWarning(batch.skipped_records, batch.skipped_reasons)

    return ReportingSnapshot(
        currency=target,
        window=window,
        totals=totals,
        net_position=net_position(totals),
        categories=categories,
        loans=loans,
        average_loan_progress=_percentage(total_principal - totals.debt, total_principal),
        savings_rate=_percentage(totals.income - totals.outflows, totals.income),
        debt_to_income_ratio=_percentage(totals.debt, totals.income),
        skipped_records=batch.skipped_records,
        used_fallback_rate=batch.used_fallback_rate,
        warning=warning,
    )


def _percentage(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= ZERO:
        return ZERO
    return part / whole * HUNDRED
