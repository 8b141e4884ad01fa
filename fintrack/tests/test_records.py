import unittest
from datetime import date
from decimal import Decimal

from fintrack.errors import ValidationError
from fintrack.records import (
    Income,
    LoanBalance,
    LoanPayment,
    RecordKind,
    ScheduledPayment,
    Transfer,
    category_of,
    generate_reference_number,
    validate_record,
)


def make_transfer(**overrides) -> Transfer:
    values = dict(
        recipient_name="Asha",
        recipient_country="India",
        amount_sent=Decimal("1000"),
        currency="USD",
        amount_received=Decimal("83000"),
        currency_received="INR",
        exchange_rate=Decimal("83.0"),
        occurred_on=date(2024, 3, 5),
    )
    values.update(overrides)
    return Transfer(**values)


class RecordKindTests(unittest.TestCase):
    def test_accepts_plural_and_hyphenated_names(self) -> None:
        self.assertEqual(RecordKind.validate("loans"), RecordKind.LOAN)
        self.assertEqual(RecordKind.validate("scheduled-payments"), RecordKind.SCHEDULED_PAYMENT)
        self.assertEqual(RecordKind.validate(" Income "), RecordKind.INCOME)

    def test_rejects_unknown_kind(self) -> None:
        with self.assertRaises(ValidationError):
            RecordKind.validate("budgets")


class RecordValidationTests(unittest.TestCase):
    def test_income_is_normalized(self) -> None:
        record = validate_record(
            Income(
                source="  Salary ",
                amount=Decimal("5000"),
                currency="usd",
                occurred_on=date(2024, 3, 1),
                category=" ",
            )
        )

        self.assertEqual(record.source, "Salary")
        self.assertEqual(record.currency, "USD")
        self.assertIsNone(record.category)
        self.assertEqual(category_of(record), "Other")

    def test_income_rejects_non_positive_amount(self) -> None:
        with self.assertRaises(ValidationError):
            validate_record(
                Income(
                    source="Salary",
                    amount=Decimal("0"),
                    currency="USD",
                    occurred_on=date(2024, 3, 1),
                )
            )

    def test_unsupported_currency_is_a_validation_error(self) -> None:
        with self.assertRaises(ValidationError):
            validate_record(
                Income(
                    source="Salary",
                    amount=Decimal("10"),
                    currency="JPY",
                    occurred_on=date(2024, 3, 1),
                )
            )

    def test_stored_rate_requires_quote_currency(self) -> None:
        with self.assertRaises(ValidationError):
            validate_record(
                Income(
                    source="Salary",
                    amount=Decimal("10"),
                    currency="USD",
                    occurred_on=date(2024, 3, 1),
                    exchange_rate_at_entry=Decimal("83"),
                )
            )

    def test_stored_rate_is_checked_against_bounds(self) -> None:
        with self.assertRaises(ValidationError):
            validate_record(
                Income(
                    source="Salary",
                    amount=Decimal("10"),
                    currency="USD",
                    occurred_on=date(2024, 3, 1),
                    exchange_rate_at_entry=Decimal("250"),
                    rate_currency="INR",
                )
            )

    def test_stored_rate_in_own_currency_is_dropped(self) -> None:
        record = validate_record(
            Income(
                source="Salary",
                amount=Decimal("10"),
                currency="USD",
                occurred_on=date(2024, 3, 1),
                exchange_rate_at_entry=Decimal("1"),
                rate_currency="USD",
            )
        )

        self.assertIsNone(record.exchange_rate_at_entry)
        self.assertIsNone(record.historical_rate)

    def test_loan_status_follows_balance(self) -> None:
        loan = validate_record(
            LoanBalance(
                name="Car",
                principal=Decimal("1000"),
                current_balance=Decimal("0"),
                currency="USD",
                occurred_on=date(2024, 1, 1),
            )
        )

        self.assertEqual(loan.status, "paid_off")

    def test_loan_balance_cannot_exceed_principal(self) -> None:
        with self.assertRaises(ValidationError):
            validate_record(
                LoanBalance(
                    name="Car",
                    principal=Decimal("1000"),
                    current_balance=Decimal("1500"),
                    currency="USD",
                    occurred_on=date(2024, 1, 1),
                )
            )

    def test_loan_payment_needs_a_positive_total(self) -> None:
        with self.assertRaises(ValidationError):
            validate_record(
                LoanPayment(
                    loan_id=1,
                    principal_amount=Decimal("0"),
                    interest_amount=Decimal("0"),
                    currency="USD",
                    occurred_on=date(2024, 1, 1),
                )
            )

    def test_transfer_defaults(self) -> None:
        transfer = validate_record(make_transfer(status="Completed"))

        self.assertEqual(transfer.status, "completed")
        self.assertEqual(transfer.completion_date, date(2024, 3, 5))
        self.assertTrue(transfer.reference_number.startswith("TXN"))
        self.assertEqual(transfer.historical_rate.rate, Decimal("83.0"))

    def test_transfer_rejects_out_of_range_rate(self) -> None:
        with self.assertRaises(ValidationError):
            validate_record(make_transfer(exchange_rate=Decimal("0")))
        with self.assertRaises(ValidationError):
            validate_record(make_transfer(currency_received="EUR", exchange_rate=Decimal("12")))

    def test_transfer_rejects_negative_fee(self) -> None:
        with self.assertRaises(ValidationError):
            validate_record(make_transfer(fee_amount=Decimal("-1")))

    def test_scheduled_payment_frequency(self) -> None:
        once = validate_record(
            ScheduledPayment(
                name="Rent",
                amount=Decimal("700"),
                currency="USD",
                due_date=date(2024, 3, 1),
            )
        )
        monthly = validate_record(
            ScheduledPayment(
                name="Rent",
                amount=Decimal("700"),
                currency="USD",
                due_date=date(2024, 3, 1),
                frequency="Monthly",
            )
        )

        self.assertEqual(once.frequency, "once")
        self.assertFalse(once.is_recurring)
        self.assertEqual(monthly.frequency, "monthly")
        self.assertTrue(monthly.is_recurring)
        self.assertEqual(monthly.occurred_on, date(2024, 3, 1))

    def test_scheduled_payment_rejects_unknown_frequency(self) -> None:
        with self.assertRaises(ValidationError):
            validate_record(
                ScheduledPayment(
                    name="Rent",
                    amount=Decimal("700"),
                    currency="USD",
                    due_date=date(2024, 3, 1),
                    frequency="fortnightly",
                )
            )

    def test_amounts_are_limited_to_cents(self) -> None:
        with self.assertRaises(ValidationError):
            validate_record(
                Income(
                    source="Salary",
                    amount=Decimal("10.005"),
                    currency="USD",
                    occurred_on=date(2024, 3, 1),
                )
            )

        record = validate_record(
            Income(
                source="Salary",
                amount=Decimal("10.500"),
                currency="USD",
                occurred_on=date(2024, 3, 1),
            )
        )
        self.assertEqual(str(record.amount), "10.50")

    def test_amounts_must_fit_storage(self) -> None:
        with self.assertRaises(ValidationError):
            validate_record(
                Income(
                    source="Salary",
                    amount=Decimal("10000000000"),
                    currency="USD",
                    occurred_on=date(2024, 3, 1),
                )
            )
        with self.assertRaises(ValidationError):
            validate_record(make_transfer(amount_received=Decimal("1E12")))

    def test_loan_amounts_are_limited_to_cents(self) -> None:
        with self.assertRaises(ValidationError):
            validate_record(
                LoanPayment(
                    loan_id=1,
                    principal_amount=Decimal("99.996"),
                    interest_amount=Decimal("0"),
                    currency="USD",
                    occurred_on=date(2024, 1, 1),
                )
            )
        with self.assertRaises(ValidationError):
            validate_record(
                LoanBalance(
                    name="Car",
                    principal=Decimal("1000"),
                    current_balance=Decimal("0.004"),
                    currency="USD",
                    occurred_on=date(2024, 1, 1),
                )
            )
        with self.assertRaises(ValidationError):
            validate_record(
                LoanBalance(
                    name="Car",
                    principal=Decimal("1000"),
                    current_balance=Decimal("1000"),
                    currency="USD",
                    occurred_on=date(2024, 1, 1),
                    interest_rate=Decimal("5.1255"),
                )
            )

    def test_rates_are_limited_to_six_places(self) -> None:
        with self.assertRaises(ValidationError):
            validate_record(make_transfer(exchange_rate=Decimal("83.1234567")))
        with self.assertRaises(ValidationError):
            validate_record(
                Income(
                    source="Salary",
                    amount=Decimal("10"),
                    currency="USD",
                    occurred_on=date(2024, 3, 1),
                    exchange_rate_at_entry=Decimal("83.1234567"),
                    rate_currency="INR",
                )
            )

    def test_reference_numbers_are_unique(self) -> None:
        first = generate_reference_number()
        second = generate_reference_number()

        self.assertTrue(first.startswith("TXN"))
        self.assertNotEqual(first, second)


if __name__ == "__main__":
    unittest.main()
