from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
import logging

from fintrack.aggregator import (
    ConversionBatch,
    MonthlyTrend,
    PaymentScheduleSummary,
    ReportingSnapshot,
    TransferSummary,
    build_snapshot,
    convert_records,
    filter_window,
    monthly_trends,
    payment_schedule_summary,
    transfer_summary,
)
from fintrack.currency_conversion import ConversionService, normalize_currency
from fintrack.csv_export import export_category_csv
from fintrack.errors import ConversionError, ValidationError
from fintrack.loan_ledger import (
    apply_payment,
    edit_loan,
    open_loan,
    remove_payment,
    revise_payment,
    total_interest_paid,
)
from fintrack.periods import DateRange
from fintrack.records import (
    LoanBalance,
    LoanPayment,
    MoneyRecord,
    PaymentStatus,
    RecordKind,
    ScheduledPayment,
    validate_record,
)
from fintrack.storage import Change, RecordStore

logger = logging.getLogger(__name__)

REPORTED_KINDS = (
    RecordKind.INCOME,
    RecordKind.MONTHLY_EXPENSE,
    RecordKind.LOAN,
    RecordKind.LOAN_PAYMENT,
    RecordKind.TRANSFER,
    RecordKind.SCHEDULED_PAYMENT,
)


@dataclass
class LedgerService:
    store: RecordStore
    conversion: ConversionService
    default_currency: str = "USD"

    def reporting_currency(self, user_id: str, requested: str | None = None) -> str:
        if requested:
            return normalize_currency(requested)
        home_currency = self.store.get_home_currency(user_id)
        if home_currency:
            try:
                return normalize_currency(home_currency)
            except ConversionError:
                logger.warning("Ignoring invalid home currency %r for %s", home_currency, user_id)
        return self.default_currency

    def set_home_currency(self, user_id: str, currency: str) -> str:
        try:
            normalized = normalize_currency(currency)
        except ConversionError as exc:
            raise ValidationError(str(exc)) from exc
        self.store.set_home_currency(user_id, normalized)
        return normalized

    def list_records(
        self, user_id: str, kind: str, date_range: DateRange | None = None
    ) -> list[MoneyRecord]:
        return self.store.list_records(user_id, RecordKind.validate(kind), date_range)

    def get_record(self, user_id: str, kind: str, record_id: int) -> MoneyRecord:
        return self.store.get_record(user_id, RecordKind.validate(kind), record_id)

    def create_record(self, user_id: str, record: MoneyRecord) -> MoneyRecord:
        if isinstance(record, LoanPayment):
            return self.record_loan_payment(user_id, record)
        if isinstance(record, LoanBalance):
            record = open_loan(record)
        return self.store.insert_record(user_id, validate_record(replace(record, id=None)))

    def update_record(self, user_id: str, record: MoneyRecord) -> MoneyRecord:
        if record.id is None:
            raise ValidationError("Record id required for update.")
        if isinstance(record, LoanPayment):
            return self.edit_loan_payment(user_id, record)
        if isinstance(record, LoanBalance):
            existing = self.store.get_record(user_id, RecordKind.LOAN, record.id)
            record = edit_loan(
                replace(record, status=existing.status),
                principal=record.principal,
                current_balance=record.current_balance,
            )
        else:
            self.store.get_record(user_id, record.kind, record.id)
        return self.store.update_record(user_id, validate_record(record))

    def delete_record(self, user_id: str, kind: str, record_id: int) -> MoneyRecord:
        normalized_kind = RecordKind.validate(kind)
        if normalized_kind == RecordKind.LOAN_PAYMENT:
            return self.delete_loan_payment(user_id, record_id)
        record = self.store.get_record(user_id, normalized_kind, record_id)
        if normalized_kind == RecordKind.LOAN:
            payments = [
                payment
                for payment in self.store.list_records(user_id, RecordKind.LOAN_PAYMENT)
                if payment.loan_id == record_id
            ]
            changes = [Change(Change.DELETE, payment) for payment in payments]
            changes.append(Change(Change.DELETE, record))
            return self.store.apply_changes(user_id, changes)[-1]
        return self.store.delete_record(user_id, record)

    def record_loan_payment(self, user_id: str, payment: LoanPayment) -> LoanPayment:
        loan = self._get_loan(user_id, payment.loan_id)
        payment = validate_record(replace(payment, id=None, currency=loan.currency))
        updated_loan = apply_payment(loan, payment)
        stored_payment, _ = self.store.apply_changes(
            user_id,
            [Change(Change.INSERT, payment), Change(Change.UPDATE, updated_loan)],
        )
        return stored_payment

    def edit_loan_payment(self, user_id: str, payment: LoanPayment) -> LoanPayment:
        previous = self.store.get_record(user_id, RecordKind.LOAN_PAYMENT, payment.id)
        if previous.loan_id != payment.loan_id:
            raise ValidationError("A payment cannot be moved to another loan.")
        loan = self._get_loan(user_id, previous.loan_id)
        payment = validate_record(replace(payment, currency=loan.currency))
        updated_loan = revise_payment(loan, previous, payment)
        stored_payment, _ = self.store.apply_changes(
            user_id,
            [Change(Change.UPDATE, payment), Change(Change.UPDATE, updated_loan)],
        )
        return stored_payment

    def delete_loan_payment(self, user_id: str, payment_id: int) -> LoanPayment:
        payment = self.store.get_record(user_id, RecordKind.LOAN_PAYMENT, payment_id)
        loan = self._get_loan(user_id, payment.loan_id)
        updated_loan = remove_payment(loan, payment)
        deleted, _ = self.store.apply_changes(
            user_id,
            [Change(Change.DELETE, payment), Change(Change.UPDATE, updated_loan)],
        )
        return deleted

    def mark_payment_paid(self, user_id: str, payment_id: int) -> ScheduledPayment:
        payment = self.store.get_record(user_id, RecordKind.SCHEDULED_PAYMENT, payment_id)
        return self.store.update_record(user_id, replace(payment, status=PaymentStatus.PAID))

    def snapshot(
        self,
        user_id: str,
        window: DateRange | None = None,
        currency: str | None = None,
        top_n: int | None = None,
    ) -> ReportingSnapshot:
        records = self._load_records(user_id, window)
        return build_snapshot(
            records,
            self.conversion,
            self.reporting_currency(user_id, currency),
            window=window,
            top_n=top_n,
        )

    def export_categories_csv(
        self,
        user_id: str,
        window: DateRange | None = None,
        currency: str | None = None,
        top_n: int | None = None,
    ) -> str:
        snapshot = self.snapshot(user_id, window=window, currency=currency, top_n=top_n)
        return export_category_csv(snapshot.categories)

    def monthly_trends(
        self, user_id: str, window: DateRange, currency: str | None = None
    ) -> list[MonthlyTrend]:
        batch = self._convert(user_id, window, currency)
        return monthly_trends(batch.records, window)

    def transfer_summary(
        self, user_id: str, window: DateRange | None = None, currency: str | None = None
    ) -> TransferSummary:
        batch = self._convert(user_id, window, currency, kinds=(RecordKind.TRANSFER,))
        return transfer_summary(batch.records)

    def payment_schedule_summary(
        self, user_id: str, today: date, currency: str | None = None
    ) -> PaymentScheduleSummary:
        batch = self._convert(user_id, None, currency, kinds=(RecordKind.SCHEDULED_PAYMENT,))
        return payment_schedule_summary(batch.records, today)

    def interest_paid(self, user_id: str, currency: str | None = None) -> Decimal:
        loans_by_id = {
            loan.id: loan for loan in self.store.list_records(user_id, RecordKind.LOAN)
        }
        payments = self.store.list_records(user_id, RecordKind.LOAN_PAYMENT)
        return total_interest_paid(
            payments,
            loans_by_id,
            self.conversion,
            self.reporting_currency(user_id, currency),
        )

    def _convert(
        self,
        user_id: str,
        window: DateRange | None,
        currency: str | None,
        kinds: tuple[str, ...] = REPORTED_KINDS,
    ) -> ConversionBatch:
        records = self._load_records(user_id, window, kinds)
        return convert_records(
            filter_window(records, window),
            self.conversion,
            self.reporting_currency(user_id, currency),
        )

    def _load_records(
        self,
        user_id: str,
        window: DateRange | None,
        kinds: tuple[str, ...] = REPORTED_KINDS,
    ) -> list[MoneyRecord]:
        records: list[MoneyRecord] = []
        for kind in kinds:
            # Loan balances are current state, never windowed.
            kind_window = None if kind == RecordKind.LOAN else window
            records.extend(self.store.list_records(user_id, kind, kind_window))
        return records

    def _get_loan(self, user_id: str, loan_id: int) -> LoanBalance:
        return self.store.get_record(user_id, RecordKind.LOAN, loan_id)


def create_service(
    store: RecordStore,
    conversion: ConversionService | None = None,
    default_currency: str = "USD",
) -> LedgerService:
    return LedgerService(
        store=store,
        conversion=conversion or ConversionService(),
        default_currency=normalize_currency(default_currency),
    )

