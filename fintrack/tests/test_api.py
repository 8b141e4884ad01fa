import unittest
from datetime import date

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from fintrack.config import Settings
from fintrack.ledger_service import create_service
from fintrack.main import create_app
from fintrack.storage import SqlRecordStore


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        store = SqlRecordStore(engine)
        store.create_schema()
        settings = Settings(live_rates_enabled=False)
        self.client = TestClient(create_app(service=create_service(store), settings=settings))
        self.headers = {"x-user-id": "alice"}

    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_requires_user_identity(self) -> None:
        response = self.client.get("/income")

        self.assertEqual(response.status_code, 401)

    def test_settings_round_trip(self) -> None:
        response = self.client.put(
            "/users/me/settings", json={"home_currency": "inr"}, headers=self.headers
        )
        self.assertEqual(response.status_code, 200)

        response = self.client.get("/users/me/settings", headers=self.headers)

        self.assertEqual(response.json(), {"user_id": "alice", "home_currency": "INR"})

    def test_invalid_home_currency(self) -> None:
        response = self.client.put(
            "/users/me/settings", json={"home_currency": "XYZ"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 400)

    def test_income_crud(self) -> None:
        created = self.client.post(
            "/income",
            json={"source": "Salary", "amount": "1500", "date": "2024-03-01"},
            headers=self.headers,
        )
        self.assertEqual(created.status_code, 200)
        income_id = created.json()["id"]
        self.assertEqual(created.json()["currency"], "USD")

        updated = self.client.put(
            f"/income/{income_id}",
            json={"source": "Salary", "amount": "1750", "date": "2024-03-01"},
            headers=self.headers,
        )
        self.assertEqual(updated.status_code, 200)

        listed = self.client.get(
            "/income",
            params={"start_date": "2024-03-01", "end_date": "2024-04-01"},
            headers=self.headers,
        )
        self.assertEqual(len(listed.json()), 1)
        self.assertEqual(float(listed.json()[0]["amount"]), 1750.0)

        deleted = self.client.delete(f"/income/{income_id}", headers=self.headers)
        self.assertEqual(deleted.status_code, 200)
        missing = self.client.delete(f"/income/{income_id}", headers=self.headers)
        self.assertEqual(missing.status_code, 404)

    def test_invalid_record_is_rejected(self) -> None:
        response = self.client.post(
            "/expenses",
            json={"description": "Rent", "amount": "-5", "date": "2024-03-01"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_loan_payment_flow(self) -> None:
        loan = self.client.post(
            "/loans",
            json={"name": "Home", "principal": "100000", "start_date": "2024-01-01"},
            headers=self.headers,
        ).json()
        self.assertEqual(loan["status"], "active")

        payment = self.client.post(
            f"/loans/{loan['id']}/payments",
            json={
                "principal_amount": "30000",
                "interest_amount": "5000",
                "payment_date": "2024-02-01",
            },
            headers=self.headers,
        )
        self.assertEqual(payment.status_code, 200)

        payments = self.client.get(f"/loans/{loan['id']}/payments", headers=self.headers)
        self.assertEqual(len(payments.json()), 1)

        deleted = self.client.delete(
            f"/loans/{loan['id']}/payments/{payment.json()['id']}", headers=self.headers
        )
        self.assertEqual(deleted.status_code, 200)

        loans = self.client.get("/loans", headers=self.headers).json()
        self.assertEqual(float(loans[0]["current_balance"]), 100000.0)
        self.assertEqual(loans[0]["status"], "active")

    def test_new_loan_cannot_set_its_balance(self) -> None:
        response = self.client.post(
            "/loans",
            json={
                "name": "Home",
                "principal": "100000",
                "current_balance": "40000",
                "start_date": "2024-01-01",
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(self.client.get("/loans", headers=self.headers).json(), [])

    def test_loan_update_balance(self) -> None:
        loan = self.client.post(
            "/loans",
            json={"name": "Home", "principal": "100000", "start_date": "2024-01-01"},
            headers=self.headers,
        ).json()
        self.assertEqual(float(loan["current_balance"]), 100000.0)

        updated = self.client.put(
            f"/loans/{loan['id']}",
            json={
                "name": "Home",
                "principal": "100000",
                "current_balance": "40000",
                "start_date": "2024-01-01",
            },
            headers=self.headers,
        )
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(float(updated.json()["current_balance"]), 40000.0)

        renamed = self.client.put(
            f"/loans/{loan['id']}",
            json={"name": "Mortgage", "principal": "100000", "start_date": "2024-01-01"},
            headers=self.headers,
        )
        self.assertEqual(renamed.status_code, 200)
        self.assertEqual(renamed.json()["name"], "Mortgage")
        self.assertEqual(float(renamed.json()["current_balance"]), 40000.0)

    def test_sub_cent_amount_is_rejected(self) -> None:
        response = self.client.post(
            "/income",
            json={"source": "Salary", "amount": "10.005", "date": "2024-03-01"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_loan_payment_total_must_match(self) -> None:
        loan = self.client.post(
            "/loans",
            json={"name": "Car", "principal": "1000", "start_date": "2024-01-01"},
            headers=self.headers,
        ).json()

        response = self.client.post(
            f"/loans/{loan['id']}/payments",
            json={
                "principal_amount": "100",
                "interest_amount": "10",
                "total_amount": "100",
                "payment_date": "2024-02-01",
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_transfer_fills_amount_received(self) -> None:
        response = self.client.post(
            "/transfers",
            json={
                "recipient_name": "Asha",
                "recipient_country": "India",
                "amount_sent": "1000",
                "exchange_rate": "83.0",
                "transfer_date": "2024-03-05",
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(float(response.json()["amount_received"]), 83000.0)
        self.assertTrue(response.json()["reference_number"].startswith("TXN"))

    def test_transfer_rate_out_of_range(self) -> None:
        response = self.client.post(
            "/transfers",
            json={
                "recipient_name": "Asha",
                "recipient_country": "India",
                "amount_sent": "1000",
                "exchange_rate": "500",
                "transfer_date": "2024-03-05",
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_summary_and_export(self) -> None:
        self.client.post(
            "/income",
            json={
                "source": "Salary",
                "amount": "1000",
                "date": "2024-03-01",
                "category": "Salary",
                "exchange_rate": "83.0",
                "rate_currency": "INR",
            },
            headers=self.headers,
        )
        self.client.post(
            "/income",
            json={"source": "Rent", "amount": "50000", "currency": "INR", "date": "2024-03-02"},
            headers=self.headers,
        )
        params = {"start_date": "2024-03-01", "end_date": "2024-04-01", "currency": "INR"}

        summary = self.client.get("/reports/summary", params=params, headers=self.headers)
        self.assertEqual(summary.status_code, 200)
        self.assertEqual(float(summary.json()["total_income"]), 133000.0)
        self.assertEqual(summary.json()["currency"], "INR")
        self.assertFalse(summary.json()["used_fallback_rate"])

        breakdown = self.client.get(
            "/reports/category-breakdown", params=params, headers=self.headers
        )
        self.assertEqual(
            [row["category"] for row in breakdown.json()], ["Salary", "Other"]
        )

        export = self.client.get("/reports/export.csv", params=params, headers=self.headers)
        self.assertEqual(export.status_code, 200)
        self.assertTrue(export.headers["content-type"].startswith("text/csv"))
        self.assertEqual(
            export.text.splitlines(),
            [
                "Category,Amount,Percentage",
                "Salary,83000.00,62.41%",
                "Other,50000.00,37.59%",
            ],
        )

    def test_invalid_window(self) -> None:
        response = self.client.get(
            "/reports/summary", params={"window": "fortnight"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 400)

    def test_invalid_top_n(self) -> None:
        response = self.client.get(
            "/reports/category-breakdown", params={"top": 0}, headers=self.headers
        )

        self.assertEqual(response.status_code, 400)

    def test_monthly_trends(self) -> None:
        response = self.client.get(
            "/reports/monthly-trends", params={"window": "3months"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()[-1]["month"], date.today().strftime("%Y-%m"))

    def test_mark_scheduled_payment_paid(self) -> None:
        created = self.client.post(
            "/scheduled-payments",
            json={"payment_name": "Rent", "amount": "700", "due_date": "2024-03-01"},
            headers=self.headers,
        ).json()

        response = self.client.post(
            f"/scheduled-payments/{created['id']}/mark-paid", headers=self.headers
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "paid")

    def test_convert_endpoint(self) -> None:
        response = self.client.get(
            "/currency/convert",
            params={"amount": "100", "from_currency": "USD", "to_currency": "INR"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(float(response.json()["amount"]), 8325.0)
        self.assertFalse(response.json()["used_fallback"])

    def test_convert_with_stored_rate(self) -> None:
        response = self.client.get(
            "/currency/convert",
            params={
                "amount": "100",
                "from_currency": "USD",
                "to_currency": "INR",
                "rate_source": "historical",
                "rate": "80",
            },
        )

        self.assertEqual(float(response.json()["amount"]), 8000.0)

    def test_convert_unsupported_currency(self) -> None:
        response = self.client.get(
            "/currency/convert",
            params={"amount": "100", "from_currency": "USD", "to_currency": "JPY"},
        )

        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
