from contextlib import contextmanager
from dataclasses import asdict, replace
from datetime import date
from decimal import Decimal
import logging

from fastapi import FastAPI, Header, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict
from sqlalchemy import create_engine

from fintrack.aggregator import CategoryShare, LoanProgress, ReportingSnapshot
from fintrack.config import Settings
from fintrack.currency_conversion import (
    ConversionService,
    ExchangeRate,
    ExchangeRateApiProvider,
    RateSource,
    normalize_currency,
    quantize_amount,
    validate_exchange_rate,
)
from fintrack.errors import ConversionError, PersistenceError, RecordNotFound, ValidationError
from fintrack.ledger_service import LedgerService, create_service
from fintrack.periods import DateRange, named_window
from fintrack.records import (
    Income,
    LoanBalance,
    LoanPayment,
    MoneyRecord,
    MonthlyExpense,
    RecordKind,
    ScheduledPayment,
    Transfer,
)
from fintrack.storage import SqlRecordStore

logger = logging.getLogger(__name__)


class UserSettingsPayload(BaseModel):
    home_currency: str | None = None


class UserSettingsResponse(BaseModel):
    user_id: str
    home_currency: str


class IncomePayload(BaseModel):
    source: str
    amount: Decimal
    currency: str | None = None
    date: date
    category: str | None = None
    description: str | None = None
    is_recurring: bool = False
    recurring_frequency: str | None = None
    exchange_rate: Decimal | None = None
    rate_currency: str | None = None

    def to_record(self, default_currency: str, record_id: int | None = None) -> Income:
        return Income(
            id=record_id,
            source=self.source,
            amount=self.amount,
            currency=self.currency or default_currency,
            occurred_on=self.date,
            category=self.category,
            description=self.description,
            is_recurring=self.is_recurring,
            recurring_frequency=self.recurring_frequency,
            exchange_rate_at_entry=self.exchange_rate,
            rate_currency=_rate_currency(self.exchange_rate, self.rate_currency, default_currency),
        )


class MonthlyExpensePayload(BaseModel):
    description: str
    amount: Decimal
    currency: str | None = None
    date: date
    category: str | None = None
    payment_method: str | None = None
    exchange_rate: Decimal | None = None
    rate_currency: str | None = None

    def to_record(self, default_currency: str, record_id: int | None = None) -> MonthlyExpense:
        return MonthlyExpense(
            id=record_id,
            description=self.description,
            amount=self.amount,
            currency=self.currency or default_currency,
            occurred_on=self.date,
            category=self.category,
            payment_method=self.payment_method,
            exchange_rate_at_entry=self.exchange_rate,
            rate_currency=_rate_currency(self.exchange_rate, self.rate_currency, default_currency),
        )


class LoanPayload(BaseModel):
    # A new loan always starts at its principal.
    model_config = ConfigDict(extra="forbid")

    name: str
    principal: Decimal
    currency: str | None = None
    start_date: date
    interest_rate: Decimal = Decimal("0")
    lender: str | None = None
    loan_type: str | None = None
    monthly_payment: Decimal | None = None
    end_date: date | None = None

    def to_record(self, default_currency: str, record_id: int | None = None) -> LoanBalance:
        return LoanBalance(
            id=record_id,
            name=self.name,
            principal=self.principal,
            current_balance=self.principal,
            currency=self.currency or default_currency,
            occurred_on=self.start_date,
            interest_rate=self.interest_rate,
            lender=self.lender,
            loan_type=self.loan_type,
            monthly_payment=self.monthly_payment,
            end_date=self.end_date,
        )


class LoanUpdatePayload(LoanPayload):
    current_balance: Decimal | None = None

    def to_record(self, default_currency: str, record_id: int | None = None) -> LoanBalance:
        record = super().to_record(default_currency, record_id=record_id)
        if self.current_balance is None:
            return record
        return replace(record, current_balance=self.current_balance)


class LoanPaymentPayload(BaseModel):
    principal_amount: Decimal
    interest_amount: Decimal = Decimal("0")
    total_amount: Decimal | None = None
    payment_date: date
    payment_method: str | None = None
    notes: str | None = None

    def to_record(self, loan: LoanBalance, record_id: int | None = None) -> LoanPayment:
        if (
            self.total_amount is not None
            and self.total_amount != self.principal_amount + self.interest_amount
        ):
            raise ValidationError("Total amount must equal principal + interest.")
        return LoanPayment(
            id=record_id,
            loan_id=loan.id,
            principal_amount=self.principal_amount,
            interest_amount=self.interest_amount,
            currency=loan.currency,
            occurred_on=self.payment_date,
            payment_method=self.payment_method,
            notes=self.notes,
        )


class TransferPayload(BaseModel):
    recipient_name: str
    recipient_country: str
    amount_sent: Decimal
    currency_sent: str = "USD"
    amount_received: Decimal | None = None
    currency_received: str = "INR"
    exchange_rate: Decimal
    transfer_fee: Decimal = Decimal("0")
    transfer_method: str | None = None
    purpose: str | None = None
    status: str = "pending"
    transfer_date: date
    completion_date: date | None = None
    reference_number: str | None = None

    def to_record(self, default_currency: str, record_id: int | None = None) -> Transfer:
        amount_received = self.amount_received
        if amount_received is None:
            amount_received = quantize_amount(self.amount_sent * self.exchange_rate)
        return Transfer(
            id=record_id,
            recipient_name=self.recipient_name,
            recipient_country=self.recipient_country,
            amount_sent=self.amount_sent,
            currency=self.currency_sent,
            amount_received=amount_received,
            currency_received=self.currency_received,
            exchange_rate=self.exchange_rate,
            occurred_on=self.transfer_date,
            fee_amount=self.transfer_fee,
            status=self.status,
            transfer_method=self.transfer_method,
            purpose=self.purpose,
            reference_number=self.reference_number,
            completion_date=self.completion_date,
        )


class ScheduledPaymentPayload(BaseModel):
    payment_name: str
    amount: Decimal
    currency: str | None = None
    due_date: date
    category: str | None = None
    recipient: str | None = None
    frequency: str = "once"
    auto_pay: bool = False
    status: str = "pending"
    reminder_days: int = 3
    notes: str | None = None

    def to_record(self, default_currency: str, record_id: int | None = None) -> ScheduledPayment:
        return ScheduledPayment(
            id=record_id,
            name=self.payment_name,
            amount=self.amount,
            currency=self.currency or default_currency,
            due_date=self.due_date,
            category=self.category,
            recipient=self.recipient,
            frequency=self.frequency,
            auto_pay=self.auto_pay,
            status=self.status,
            reminder_days=self.reminder_days,
            notes=self.notes,
        )


class CategoryBreakdownResponse(BaseModel):
    category: str
    amount: Decimal
    percentage: Decimal


class LoanProgressResponse(BaseModel):
    loan_id: int | None = None
    name: str
    status: str
    principal: Decimal
    current_balance: Decimal
    progress_percent: Decimal


class SummaryResponse(BaseModel):
    currency: str
    start_date: date | None = None
    end_date: date | None = None
    total_income: Decimal
    total_debt: Decimal
    total_transfers: Decimal
    total_expenses: Decimal
    total_loan_payments: Decimal
    total_transfer_fees: Decimal
    net_position: Decimal
    savings_rate: Decimal
    debt_to_income_ratio: Decimal
    average_loan_progress: Decimal
    categories: list[CategoryBreakdownResponse]
    loans: list[LoanProgressResponse]
    skipped_records: int
    used_fallback_rate: bool
    warning: str | None = None


class MonthlyTrendResponse(BaseModel):
    month: str
    income: Decimal
    expenses: Decimal
    net: Decimal


class ConversionResponse(BaseModel):
    amount: Decimal
    currency: str
    rate: Decimal
    rate_source: str
    used_fallback: bool


PAYLOADS = {
    RecordKind.INCOME: ("/income", IncomePayload, IncomePayload),
    RecordKind.MONTHLY_EXPENSE: ("/expenses", MonthlyExpensePayload, MonthlyExpensePayload),
    RecordKind.LOAN: ("/loans", LoanPayload, LoanUpdatePayload),
    RecordKind.TRANSFER: ("/transfers", TransferPayload, TransferPayload),
    RecordKind.SCHEDULED_PAYMENT: (
        "/scheduled-payments",
        ScheduledPaymentPayload,
        ScheduledPaymentPayload,
    ),
}


def get_user_id(x_user_id: str | None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    return x_user_id.strip()


@contextmanager
def http_errors():
    try:
        yield
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (ValidationError, ConversionError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def record_to_dict(record: MoneyRecord) -> dict:
    payload = asdict(record)
    payload["kind"] = record.kind
    return payload


def resolve_window(
    window: str | None,
    start_date: date | None,
    end_date: date | None,
    today: date | None = None,
) -> DateRange | None:
    if start_date is not None or end_date is not None:
        if start_date is None or end_date is None:
            raise ValidationError("start_date and end_date must be provided together.")
        return DateRange(start_date, end_date)
    if not window or window.strip().lower() == "all":
        return None
    return named_window(window, today or date.today())


def snapshot_to_response(snapshot: ReportingSnapshot) -> SummaryResponse:
    totals = snapshot.totals
    return SummaryResponse(
        currency=snapshot.currency,
        start_date=snapshot.window.start if snapshot.window else None,
        end_date=snapshot.window.end if snapshot.window else None,
        total_income=totals.income,
        total_debt=totals.debt,
        total_transfers=totals.transfers,
        total_expenses=totals.expenses,
        total_loan_payments=totals.loan_payments,
        total_transfer_fees=totals.transfer_fees,
        net_position=snapshot.net_position,
        savings_rate=snapshot.savings_rate,
        debt_to_income_ratio=snapshot.debt_to_income_ratio,
        average_loan_progress=snapshot.average_loan_progress,
        categories=[_category_response(share) for share in snapshot.categories],
        loans=[_loan_response(loan) for loan in snapshot.loans],
        skipped_records=snapshot.skipped_records,
        used_fallback_rate=snapshot.used_fallback_rate,
        warning=str(snapshot.warning) if snapshot.warning else None,
    )


def build_service(settings: Settings) -> LedgerService:
    connect_args = {}
    if settings.database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    engine = create_engine(settings.database_url, connect_args=connect_args)
    store = SqlRecordStore(engine)
    store.create_schema()

    live_provider = None
    if settings.live_rates_enabled:
        live_provider = ExchangeRateApiProvider(
            base_url=settings.fx_api_url,
            timeout_seconds=settings.fx_timeout_seconds,
            cache_ttl_seconds=settings.fx_cache_ttl_seconds,
        )
    else:
        logger.info("Live exchange rates disabled; using the fixed rate table.")
    return create_service(
        store,
        ConversionService(live_provider=live_provider),
        default_currency=settings.default_currency,
    )


def create_app(service: LedgerService | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    ledger = service or build_service(settings)

    app = FastAPI(title="fintrack")
    app.state.ledger = ledger
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/users/me/settings", response_model=UserSettingsResponse)
    def get_user_settings(
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> UserSettingsResponse:
        user_id = get_user_id(x_user_id)
        with http_errors():
            home_currency = ledger.reporting_currency(user_id)
        return UserSettingsResponse(user_id=user_id, home_currency=home_currency)

    @app.put("/users/me/settings", response_model=UserSettingsResponse)
    def update_user_settings(
        payload: UserSettingsPayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> UserSettingsResponse:
        user_id = get_user_id(x_user_id)
        if payload.home_currency is None:
            raise HTTPException(status_code=400, detail="Home currency required.")
        with http_errors():
            home_currency = ledger.set_home_currency(user_id, payload.home_currency)
        return UserSettingsResponse(user_id=user_id, home_currency=home_currency)

    for kind, (path, create_model, update_model) in PAYLOADS.items():
        _register_record_routes(app, ledger, kind, path, create_model, update_model)

    @app.get("/loans/{loan_id}/payments")
    def list_loan_payments(
        loan_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> list[dict]:
        user_id = get_user_id(x_user_id)
        with http_errors():
            ledger.get_record(user_id, RecordKind.LOAN, loan_id)
            payments = ledger.list_records(user_id, RecordKind.LOAN_PAYMENT)
        return [record_to_dict(payment) for payment in payments if payment.loan_id == loan_id]

    @app.post("/loans/{loan_id}/payments")
    def create_loan_payment(
        loan_id: int,
        payload: LoanPaymentPayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        with http_errors():
            loan = ledger.get_record(user_id, RecordKind.LOAN, loan_id)
            payment = ledger.record_loan_payment(user_id, payload.to_record(loan))
        return record_to_dict(payment)

    @app.put("/loans/{loan_id}/payments/{payment_id}")
    def update_loan_payment(
        loan_id: int,
        payment_id: int,
        payload: LoanPaymentPayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        with http_errors():
            loan = ledger.get_record(user_id, RecordKind.LOAN, loan_id)
            payment = ledger.edit_loan_payment(
                user_id, payload.to_record(loan, record_id=payment_id)
            )
        return record_to_dict(payment)

    @app.delete("/loans/{loan_id}/payments/{payment_id}")
    def delete_loan_payment(
        loan_id: int,
        payment_id: int,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        with http_errors():
            payment = ledger.get_record(user_id, RecordKind.LOAN_PAYMENT, payment_id)
            if payment.loan_id != loan_id:
                raise RecordNotFound("Payment not found for this loan.")
            ledger.delete_loan_payment(user_id, payment_id)
        return {"status": "deleted"}

    @app.post("/scheduled-payments/{payment_id}/mark-paid")
    def mark_payment_paid(
        payment_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> dict:
        user_id = get_user_id(x_user_id)
        with http_errors():
            payment = ledger.mark_payment_paid(user_id, payment_id)
        return record_to_dict(payment)

    @app.get("/reports/summary", response_model=SummaryResponse)
    def summary(
        window: str | None = Query("this_month"),
        start_date: date | None = Query(None),
        end_date: date | None = Query(None),
        currency: str | None = Query(None),
        top: int | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> SummaryResponse:
        user_id = get_user_id(x_user_id)
        with http_errors():
            date_range = resolve_window(window, start_date, end_date)
            snapshot = ledger.snapshot(user_id, window=date_range, currency=currency, top_n=top)
        return snapshot_to_response(snapshot)

    @app.get("/reports/category-breakdown", response_model=list[CategoryBreakdownResponse])
    def category_breakdown(
        window: str | None = Query("this_month"),
        start_date: date | None = Query(None),
        end_date: date | None = Query(None),
        currency: str | None = Query(None),
        top: int | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[CategoryBreakdownResponse]:
        user_id = get_user_id(x_user_id)
        with http_errors():
            date_range = resolve_window(window, start_date, end_date)
            snapshot = ledger.snapshot(user_id, window=date_range, currency=currency, top_n=top)
        return [_category_response(share) for share in snapshot.categories]

    @app.get("/reports/export.csv")
    def export_csv(
        window: str | None = Query("this_month"),
        start_date: date | None = Query(None),
        end_date: date | None = Query(None),
        currency: str | None = Query(None),
        top: int | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> Response:
        user_id = get_user_id(x_user_id)
        with http_errors():
            date_range = resolve_window(window, start_date, end_date)
            content = ledger.export_categories_csv(
                user_id, window=date_range, currency=currency, top_n=top
            )
        filename = f"financial-report-{date.today().isoformat()}.csv"
        return Response(
            content=content,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/reports/monthly-trends", response_model=list[MonthlyTrendResponse])
    def monthly_trends(
        window: str = Query("6months"),
        currency: str | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[MonthlyTrendResponse]:
        user_id = get_user_id(x_user_id)
        with http_errors():
            date_range = named_window(window, date.today())
            trends = ledger.monthly_trends(user_id, date_range, currency=currency)
        return [
            MonthlyTrendResponse(
                month=trend.month.strftime("%Y-%m"),
                income=trend.income,
                expenses=trend.expenses,
                net=trend.net,
            )
            for trend in trends
        ]

    @app.get("/reports/transfers")
    def transfers_report(
        window: str | None = Query("all"),
        currency: str | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        with http_errors():
            date_range = resolve_window(window, None, None)
            report = ledger.transfer_summary(user_id, window=date_range, currency=currency)
        return asdict(report)

    @app.get("/reports/payments")
    def payments_report(
        currency: str | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        with http_errors():
            report = ledger.payment_schedule_summary(user_id, date.today(), currency=currency)
        return asdict(report)

    @app.get("/reports/interest-paid")
    def interest_paid(
        currency: str | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        with http_errors():
            total = ledger.interest_paid(user_id, currency=currency)
            resolved_currency = ledger.reporting_currency(user_id, currency)
        return {"total_interest_paid": total, "currency": resolved_currency}

    @app.get("/currency/convert", response_model=ConversionResponse)
    def convert_currency(
        amount: Decimal = Query(...),
        from_currency: str = Query(...),
        to_currency: str = Query(...),
        rate_source: RateSource = Query(RateSource.LIVE),
        rate: Decimal | None = Query(None),
    ) -> ConversionResponse:
        with http_errors():
            historical_rate = None
            if rate is not None:
                source = normalize_currency(from_currency)
                target = normalize_currency(to_currency)
                historical_rate = ExchangeRate(
                    source, target, validate_exchange_rate(rate, source, target)
                )
            conversion = ledger.conversion.convert(
                amount,
                from_currency,
                to_currency,
                rate_source=rate_source,
                historical_rate=historical_rate,
            )
        return ConversionResponse(
            amount=conversion.amount,
            currency=conversion.currency,
            rate=conversion.rate,
            rate_source=conversion.rate_source.value,
            used_fallback=conversion.used_fallback,
        )

    return app


def _register_record_routes(
    app: FastAPI,
    ledger: LedgerService,
    kind: str,
    path: str,
    create_model: type[BaseModel],
    update_model: type[BaseModel],
) -> None:
    def list_records(
        start_date: date | None = Query(None),
        end_date: date | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[dict]:
        user_id = get_user_id(x_user_id)
        with http_errors():
            date_range = resolve_window(None, start_date, end_date)
            records = ledger.list_records(user_id, kind, date_range)
        return [record_to_dict(record) for record in records]

    def create_record(
        payload: create_model,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        with http_errors():
            default_currency = ledger.reporting_currency(user_id)
            record = ledger.create_record(user_id, payload.to_record(default_currency))
        return record_to_dict(record)

    def update_record(
        record_id: int,
        payload: update_model,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        with http_errors():
            default_currency = ledger.reporting_currency(user_id)
            record = payload.to_record(default_currency, record_id=record_id)
            if isinstance(payload, LoanUpdatePayload) and payload.current_balance is None:
                existing = ledger.get_record(user_id, kind, record_id)
                record = replace(record, current_balance=existing.current_balance)
            record = ledger.update_record(user_id, record)
        return record_to_dict(record)

    def delete_record(
        record_id: int,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        with http_errors():
            ledger.delete_record(user_id, kind, record_id)
        return {"status": "deleted"}

    name = kind.replace("_", "-")
    app.add_api_route(path, list_records, methods=["GET"], name=f"list-{name}")
    app.add_api_route(path, create_record, methods=["POST"], name=f"create-{name}")
    app.add_api_route(
        f"{path}/{{record_id}}", update_record, methods=["PUT"], name=f"update-{name}"
    )
    app.add_api_route(
        f"{path}/{{record_id}}", delete_record, methods=["DELETE"], name=f"delete-{name}"
    )


def _rate_currency(
    exchange_rate: Decimal | None, rate_currency: str | None, default_currency: str
) -> str | None:
    if exchange_rate is None:
        return None
    return rate_currency or default_currency


def _category_response(share: CategoryShare) -> CategoryBreakdownResponse:
    return CategoryBreakdownResponse(
        category=share.category,
        amount=share.amount,
        percentage=share.percentage,
    )


def _loan_response(loan: LoanProgress) -> LoanProgressResponse:
    return LoanProgressResponse(
        loan_id=loan.loan_id,
        name=loan.name,
        status=loan.status,
        principal=loan.principal,
        current_balance=loan.current_balance,
        progress_percent=loan.progress_percent,
    )
