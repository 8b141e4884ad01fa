import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from fintrack.errors import PersistenceError, RecordNotFound
from fintrack.periods import DateRange
from fintrack.records import Income, LoanBalance, LoanPayment, ScheduledPayment
from fintrack.storage import Change, SqlRecordStore


def memory_store() -> SqlRecordStore:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    store = SqlRecordStore(engine)
    store.create_schema()
    return store


class SqlRecordStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = memory_store()

    def income(self, amount: str, occurred_on: date) -> Income:
        return Income(
            source="Salary",
            amount=Decimal(amount),
            currency="USD",
            occurred_on=occurred_on,
        )

    def test_insert_assigns_id_and_round_trips(self) -> None:
        stored = self.store.insert_record("alice", self.income("1500.25", date(2024, 3, 1)))

        fetched = self.store.get_record("alice", "income", stored.id)

        self.assertIsNotNone(stored.id)
        self.assertEqual(fetched.amount, Decimal("1500.25"))
        self.assertEqual(fetched.occurred_on, date(2024, 3, 1))

    def test_records_are_scoped_to_their_owner(self) -> None:
        stored = self.store.insert_record("alice", self.income("10", date(2024, 3, 1)))

        self.assertEqual(self.store.list_records("bob", "income"), [])
        with self.assertRaises(RecordNotFound):
            self.store.get_record("bob", "income", stored.id)
        with self.assertRaises(RecordNotFound):
            self.store.delete_record("bob", stored)

    def test_list_filters_half_open_range_newest_first(self) -> None:
        for day in (date(2024, 2, 29), date(2024, 3, 1), date(2024, 3, 31), date(2024, 4, 1)):
            self.store.insert_record("alice", self.income("10", day))

        records = self.store.list_records(
            "alice", "income", DateRange(date(2024, 3, 1), date(2024, 4, 1))
        )

        self.assertEqual(
            [record.occurred_on for record in records],
            [date(2024, 3, 31), date(2024, 3, 1)],
        )

    def test_scheduled_payments_filter_on_due_date(self) -> None:
        self.store.insert_record(
            "alice",
            ScheduledPayment(
                name="Rent",
                amount=Decimal("700"),
                currency="USD",
                due_date=date(2024, 3, 1),
            ),
        )

        in_range = self.store.list_records(
            "alice", "scheduled_payment", DateRange(date(2024, 3, 1), date(2024, 3, 2))
        )

        self.assertEqual(len(in_range), 1)
        self.assertEqual(in_range[0].name, "Rent")

    def test_update_missing_record_raises(self) -> None:
        with self.assertRaises(RecordNotFound):
            self.store.update_record(
                "alice",
                Income(
                    id=999,
                    source="Salary",
                    amount=Decimal("1"),
                    currency="USD",
                    occurred_on=date(2024, 1, 1),
                ),
            )

    def test_changes_are_atomic(self) -> None:
        loan = self.store.insert_record(
            "alice",
            LoanBalance(
                name="Car",
                principal=Decimal("1000"),
                current_balance=Decimal("1000"),
                currency="USD",
                occurred_on=date(2024, 1, 1),
            ),
        )
        payment = LoanPayment(
            loan_id=loan.id,
            principal_amount=Decimal("100"),
            interest_amount=Decimal("0"),
            currency="USD",
            occurred_on=date(2024, 2, 1),
        )
        missing_loan = LoanBalance(
            id=loan.id + 100,
            name="Ghost",
            principal=Decimal("1"),
            current_balance=Decimal("1"),
            currency="USD",
            occurred_on=date(2024, 1, 1),
        )

        with self.assertRaises(RecordNotFound):
            self.store.apply_changes(
                "alice",
                [Change(Change.INSERT, payment), Change(Change.UPDATE, missing_loan)],
            )

        self.assertEqual(self.store.list_records("alice", "loan_payment"), [])

    def test_home_currency(self) -> None:
        self.assertIsNone(self.store.get_home_currency("alice"))

        self.store.set_home_currency("alice", "INR")
        self.store.set_home_currency("alice", "EUR")

        self.assertEqual(self.store.get_home_currency("alice"), "EUR")

    def test_database_failures_become_persistence_errors(self) -> None:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        store = SqlRecordStore(engine)

        with self.assertRaises(PersistenceError):
            store.list_records("alice", "income")


if __name__ == "__main__":
    unittest.main()
