"""
Record storage.

``RecordStore`` is the persistence boundary the ledger service talks to.
``SqlRecordStore`` implements it with SQLAlchemy Core tables whose column
names match the record dataclass fields, plus the owning ``user_id``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
import logging
from typing import Iterator, Optional, Sequence

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from fintrack.errors import PersistenceError, RecordNotFound
from fintrack.periods import DateRange
from fintrack.records import RECORD_TYPES, MoneyRecord, RecordKind

logger = logging.getLogger(__name__)

metadata = MetaData()

profiles = Table(
    "profiles",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("home_currency", String(3)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

income = Table(
    "income",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("source", String(255), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("occurred_on", Date, nullable=False),
    Column("category", String(255)),
    Column("description", String(500)),
    Column("is_recurring", Boolean, nullable=False, default=False),
    Column("recurring_frequency", String(20)),
    Column("exchange_rate_at_entry", Numeric(14, 6)),
    Column("rate_currency", String(3)),
)

monthly_expenses = Table(
    "monthly_expenses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("description", String(500), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("occurred_on", Date, nullable=False),
    Column("category", String(255)),
    Column("payment_method", String(50)),
    Column("exchange_rate_at_entry", Numeric(14, 6)),
    Column("rate_currency", String(3)),
)

loans = Table(
    "loans",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("principal", Numeric(12, 2), nullable=False),
    Column("current_balance", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("occurred_on", Date, nullable=False),
    Column("interest_rate", Numeric(6, 3), nullable=False, default=0),
    Column("status", String(20), nullable=False, default="active"),
    Column("lender", String(255)),
    Column("loan_type", String(50)),
    Column("monthly_payment", Numeric(12, 2)),
    Column("end_date", Date),
    Column("category", String(255)),
)

loan_payments = Table(
    "loan_payments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("loan_id", Integer, ForeignKey("loans.id"), nullable=False),
    Column("principal_amount", Numeric(12, 2), nullable=False),
    Column("interest_amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("occurred_on", Date, nullable=False),
    Column("payment_method", String(50)),
    Column("notes", String(500)),
    Column("category", String(255)),
)

international_transfers = Table(
    "international_transfers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("recipient_name", String(255), nullable=False),
    Column("recipient_country", String(100), nullable=False),
    Column("amount_sent", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("amount_received", Numeric(14, 2), nullable=False),
    Column("currency_received", String(3), nullable=False),
    Column("exchange_rate", Numeric(14, 6), nullable=False),
    Column("occurred_on", Date, nullable=False),
    Column("fee_amount", Numeric(12, 2), nullable=False, default=0),
    Column("status", String(20), nullable=False, default="pending"),
    Column("transfer_method", String(50)),
    Column("purpose", String(255)),
    Column("reference_number", String(64)),
    Column("completion_date", Date),
    Column("category", String(255)),
)

scheduled_payments = Table(
    "scheduled_payments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("due_date", Date, nullable=False),
    Column("category", String(255)),
    Column("recipient", String(255)),
    Column("frequency", String(20)),
    Column("is_recurring", Boolean, nullable=False, default=False),
    Column("auto_pay", Boolean, nullable=False, default=False),
    Column("status", String(20), nullable=False, default="pending"),
    Column("reminder_days", Integer, nullable=False, default=3),
    Column("notes", String(500)),
)

TABLES: dict[str, tuple[Table, str]] = {
    RecordKind.INCOME: (income, "occurred_on"),
    RecordKind.MONTHLY_EXPENSE: (monthly_expenses, "occurred_on"),
    RecordKind.LOAN: (loans, "occurred_on"),
    RecordKind.LOAN_PAYMENT: (loan_payments, "occurred_on"),
    RecordKind.TRANSFER: (international_transfers, "occurred_on"),
    RecordKind.SCHEDULED_PAYMENT: (scheduled_payments, "due_date"),
}


@dataclass(frozen=True)
class Change:
    operation: str
    record: MoneyRecord

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class RecordStore(ABC):
    """Persistence collaborator. Failures surface as ``PersistenceError``."""

    @abstractmethod
    def list_records(
        self, user_id: str, kind: str, date_range: DateRange | None = None
    ) -> list[MoneyRecord]:
        ...

    @abstractmethod
    def get_record(self, user_id: str, kind: str, record_id: int) -> MoneyRecord:
        """Raises ``RecordNotFound`` when the record is missing or owned by someone else."""

    @abstractmethod
    def apply_changes(self, user_id: str, changes: Sequence[Change]) -> list[MoneyRecord]:
        """Apply all changes atomically and return the stored records in order."""

    @abstractmethod
    def get_home_currency(self, user_id: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_home_currency(self, user_id: str, currency: str) -> None:
        ...

    def insert_record(self, user_id: str, record: MoneyRecord) -> MoneyRecord:
        return self.apply_changes(user_id, [Change(Change.INSERT, record)])[0]

    def update_record(self, user_id: str, record: MoneyRecord) -> MoneyRecord:
        return self.apply_changes(user_id, [Change(Change.UPDATE, record)])[0]

    def delete_record(self, user_id: str, record: MoneyRecord) -> MoneyRecord:
        return self.apply_changes(user_id, [Change(Change.DELETE, record)])[0]


class SqlRecordStore(RecordStore):
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_schema(self) -> None:
        with _storage_errors("create schema"):
            metadata.create_all(self.engine)

    def list_records(
        self, user_id: str, kind: str, date_range: DateRange | None = None
    ) -> list[MoneyRecord]:
        table, date_column = TABLES[kind]
        stmt = select(table).where(table.c.user_id == user_id)
        if date_range is not None:
            stmt = stmt.where(
                table.c[date_column] >= date_range.start,
                table.c[date_column] < date_range.end,
            )
        stmt = stmt.order_by(table.c[date_column].desc(), table.c.id.desc())
        with _storage_errors(f"list {kind} records"):
            with self.engine.begin() as conn:
                rows = conn.execute(stmt).mappings().all()
        return [_row_to_record(kind, row) for row in rows]

    def get_record(self, user_id: str, kind: str, record_id: int) -> MoneyRecord:
        table, _ = TABLES[kind]
        with _storage_errors(f"fetch {kind} record"):
            with self.engine.begin() as conn:
                row = _fetch_row(conn, table, user_id, record_id)
        if row is None:
            raise RecordNotFound(f"{kind} {record_id} not found.")
        return _row_to_record(kind, row)

    def apply_changes(self, user_id: str, changes: Sequence[Change]) -> list[MoneyRecord]:
        results: list[MoneyRecord] = []
        with _storage_errors("save records"):
            with self.engine.begin() as conn:
                for change in changes:
                    results.append(self._apply(conn, user_id, change))
        return results

    def get_home_currency(self, user_id: str) -> Optional[str]:
        with _storage_errors("fetch profile"):
            with self.engine.begin() as conn:
                return conn.execute(
                    select(profiles.c.home_currency).where(profiles.c.user_id == user_id)
                ).scalar_one_or_none()

    def set_home_currency(self, user_id: str, currency: str) -> None:
        with _storage_errors("update profile"):
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(profiles)
                    .where(profiles.c.user_id == user_id)
                    .values(home_currency=currency)
                )
                if result.rowcount == 0:
                    conn.execute(
                        insert(profiles).values(user_id=user_id, home_currency=currency)
                    )

    def _apply(self, conn: Connection, user_id: str, change: Change) -> MoneyRecord:
        record = change.record
        table, _ = TABLES[record.kind]
        if change.operation == Change.INSERT:
            result = conn.execute(
                insert(table).values(user_id=user_id, **_record_values(record))
            )
            return replace(record, id=result.inserted_primary_key[0])

        if record.id is None:
            raise RecordNotFound(f"{record.kind} record has no id.")
        where = (table.c.id == record.id, table.c.user_id == user_id)
        if change.operation == Change.UPDATE:
            result = conn.execute(update(table).where(*where).values(**_record_values(record)))
        elif change.operation == Change.DELETE:
            result = conn.execute(delete(table).where(*where))
        else:
            raise ValueError(f"Unsupported change: {change.operation}")
        if result.rowcount == 0:
            raise RecordNotFound(f"{record.kind} {record.id} not found.")
        return record


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Storage failure during %s: %s", operation, exc)
        raise PersistenceError(f"Failed to {operation}.") from exc


def _fetch_row(conn: Connection, table: Table, user_id: str, record_id: int):
    return (
        conn.execute(select(table).where(table.c.id == record_id, table.c.user_id == user_id))
        .mappings()
        .first()
    )


def _record_values(record: MoneyRecord) -> dict:
    return {f.name: getattr(record, f.name) for f in fields(record) if f.name != "id"}


def _row_to_record(kind: str, row) -> MoneyRecord:
    record_type = RECORD_TYPES[kind]
    return record_type(**{f.name: row[f.name] for f in fields(record_type)})
