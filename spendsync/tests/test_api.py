import tempfile
import unittest
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path

from fastapi.testclient import TestClient

from spendsync.config import Settings
from spendsync.currency_conversion import StaticRateProvider
from spendsync.db import init_db
from spendsync.invoice_extraction import InvoiceExtractionError
from spendsync.main import create_app


class CountingRateProvider:
    def __init__(self) -> None:
        self.inner = StaticRateProvider(rates={"USD": Decimal("1"), "EUR": Decimal("0.5"), "JPY": Decimal("100")})
        self.calls = []

    def get_rate(self, source: str, target: str) -> Decimal:
        self.calls.append((source, target))
        return self.inner.get_rate(source, target)


class FakeExtractor:
    def __init__(self, result=None, error=None) -> None:
        self.result = result
        self.error = error
        self.paths = []

    def extract_file(self, path):
        self.paths.append(str(path))
        if self.error is not None:
            raise self.error
        return self.result


def expense_body(**overrides) -> dict:
    body = {
        "amount": 1000,
        "currency": "USD",
        "description": "Coffee beans",
        "date": datetime.now().replace(microsecond=0).isoformat(),
        "category": "Food",
        "type": "expense",
    }
    body.update(overrides)
    return body


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.settings = Settings(
            _env_file=None,
            database_url=f"sqlite:///{root / 'test.db'}",
            secret_key="test-secret",
            upload_dir=str(root / "uploads"),
            log_level="WARNING",
        )
        self.rates = CountingRateProvider()
        self.extractor = FakeExtractor()
        self.app = create_app(self.settings, rate_provider=self.rates, invoice_extractor=self.extractor)
        init_db(self.app.state.context.engine)
        self.client = TestClient(self.app)

    def tearDown(self) -> None:
        self.client.close()
        self.app.state.context.engine.dispose()
        self.tmp.cleanup()

    def register(self, username: str = "alice", password: str = "secret") -> dict:
        response = self.client.post("/api/register", json={"username": username, "password": password})
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()


class AuthTests(ApiTestCase):
    def test_protected_routes_require_session(self) -> None:
        for path in ("/api/expenses", "/api/stats", "/api/recurring", "/api/invoices", "/api/settings"):
            response = self.client.get(path)
            self.assertEqual(response.status_code, 401, path)
            self.assertEqual(response.json(), {"message": "Not authenticated"})

    def test_register_login_logout(self) -> None:
        user = self.register("Bob")
        self.assertEqual(user["username"], "bob")
        self.assertEqual(self.client.get("/api/user").json()["id"], user["id"])

        self.client.post("/api/logout")
        self.assertEqual(self.client.get("/api/user").status_code, 401)

        bad = self.client.post("/api/login", json={"username": "bob", "password": "wrong"})
        self.assertEqual(bad.status_code, 401)

        good = self.client.post("/api/login", json={"username": "bob", "password": "secret"})
        self.assertEqual(good.status_code, 200)
        self.assertEqual(self.client.get("/api/user").status_code, 200)

    def test_duplicate_username_conflicts(self) -> None:
        self.register("carol")
        response = self.client.post("/api/register", json={"username": "carol", "password": "x"})

        self.assertEqual(response.status_code, 409)

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})


class ExpenseTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.register()

    def test_foreign_currency_converts_once_and_keeps_original(self) -> None:
        response = self.client.post("/api/expenses", json=expense_body(amount=1000, currency="EUR"))

        self.assertEqual(response.status_code, 201, response.text)
        expense = response.json()
        self.assertEqual(expense["amount"], 2000)
        self.assertEqual(expense["originalAmount"], 1000)
        self.assertEqual(expense["currency"], "EUR")
        self.assertEqual(expense["baseCurrency"], "USD")
        self.assertEqual(Decimal(expense["exchangeRate"]), Decimal("2"))
        self.assertEqual(self.rates.calls, [("EUR", "USD")])

    def test_create_logs_formatted_amounts(self) -> None:
        with self.assertLogs("spendsync.main", level="INFO") as logs:
            self.client.post("/api/expenses", json=expense_body(amount=1000, currency="EUR"))

        output = "\n".join(logs.output)
        self.assertIn("expense_created", output)
        self.assertIn("$20.00", output)
        self.assertIn("€10.00", output)

    def test_base_currency_skips_conversion(self) -> None:
        response = self.client.post("/api/expenses", json=expense_body(amount=1250, currency="USD"))

        expense = response.json()
        self.assertEqual(expense["amount"], 1250)
        self.assertEqual(expense["originalAmount"], 1250)
        self.assertEqual(expense["exchangeRate"], "1.0")
        self.assertEqual(self.rates.calls, [])

    def test_validation_errors_name_the_field(self) -> None:
        response = self.client.post("/api/expenses", json=expense_body(amount=0))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["field"], "amount")

        response = self.client.post("/api/expenses", json=expense_body(currency="XXX"))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"message": "Unsupported currency: XXX", "field": "currency"})

    def test_list_filters_and_orders_newest_first(self) -> None:
        self.client.post("/api/expenses", json=expense_body(description="Old", date="2024-01-05T10:00:00"))
        self.client.post(
            "/api/expenses",
            json=expense_body(description="Bus", category="Transport", date="2024-01-20T10:00:00"),
        )
        self.client.post("/api/expenses", json=expense_body(description="New", date="2024-01-31T23:00:00"))

        everything = self.client.get("/api/expenses").json()
        self.assertEqual([e["description"] for e in everything], ["New", "Bus", "Old"])

        food = self.client.get("/api/expenses", params={"category": "Food"}).json()
        self.assertEqual([e["description"] for e in food], ["New", "Old"])

        window = self.client.get("/api/expenses", params={"startDate": "2024-01-10", "endDate": "2024-01-31"}).json()
        self.assertEqual([e["description"] for e in window], ["New", "Bus"])

    def test_update_reconverts_when_currency_changes(self) -> None:
        created = self.client.post("/api/expenses", json=expense_body(amount=1000)).json()

        renamed = self.client.put(f"/api/expenses/{created['id']}", json={"description": "Tea"})
        self.assertEqual(renamed.json()["description"], "Tea")
        self.assertEqual(self.rates.calls, [])

        response = self.client.put(f"/api/expenses/{created['id']}", json={"currency": "EUR"})
        updated = response.json()
        self.assertEqual(updated["amount"], 2000)
        self.assertEqual(updated["originalAmount"], 1000)
        self.assertEqual(updated["currency"], "EUR")
        self.assertEqual(self.rates.calls, [("EUR", "USD")])

        self.assertEqual(self.client.put("/api/expenses/999", json={"description": "x"}).status_code, 404)

    def test_delete_expense(self) -> None:
        created = self.client.post("/api/expenses", json=expense_body()).json()

        self.assertEqual(self.client.delete(f"/api/expenses/{created['id']}").status_code, 204)
        self.assertEqual(self.client.delete(f"/api/expenses/{created['id']}").status_code, 404)
        self.assertEqual(self.client.get("/api/expenses").json(), [])

    def test_users_only_see_their_own_expenses(self) -> None:
        self.client.post("/api/expenses", json=expense_body())
        self.client.post("/api/logout")
        self.register("mallory")

        self.assertEqual(self.client.get("/api/expenses").json(), [])

    def test_cannot_link_another_users_recurring_schedule(self) -> None:
        recurring = self.client.post(
            "/api/recurring",
            json={
                "amount": 1500,
                "description": "Gym",
                "category": "Health",
                "nextDueDate": "2024-01-01T00:00:00",
            },
        ).json()
        own = self.client.post("/api/expenses", json=expense_body()).json()
        linked = self.client.put(f"/api/expenses/{own['id']}", json={"recurringId": recurring["id"]})
        self.assertEqual(linked.json()["recurringId"], recurring["id"])

        self.client.post("/api/logout")
        self.register("mallory")
        theirs = self.client.post("/api/expenses", json=expense_body()).json()

        created = self.client.post("/api/expenses", json=expense_body(recurringId=recurring["id"]))
        updated = self.client.put(f"/api/expenses/{theirs['id']}", json={"recurringId": recurring["id"]})
        missing = self.client.put(f"/api/expenses/{theirs['id']}", json={"recurringId": 999})

        self.assertEqual(created.status_code, 404)
        self.assertEqual(updated.status_code, 404)
        self.assertEqual(missing.status_code, 404)
        self.assertIsNone(self.client.get("/api/expenses").json()[0]["recurringId"])

    def test_stats_follow_base_currency(self) -> None:
        self.client.post("/api/expenses", json=expense_body(amount=500))
        self.client.post("/api/expenses", json=expense_body(amount=10000, type="income", category="Salary"))
        self.client.post("/api/expenses", json=expense_body(amount=1000, currency="EUR"))

        stats = self.client.get("/api/stats").json()
        self.assertEqual(
            stats,
            {"totalIncome": 10000, "totalExpense": 2500, "balance": 7500, "monthlyIncome": 10000, "currency": "USD"},
        )

        patched = self.client.patch("/api/settings", json={"baseCurrency": "eur"})
        self.assertEqual(patched.json()["baseCurrency"], "EUR")

        stats = self.client.get("/api/stats").json()
        self.assertEqual(stats["currency"], "EUR")
        self.assertEqual(stats["totalExpense"], 1250)
        self.assertEqual(stats["totalIncome"], 5000)

        daily = self.client.get("/api/stats/daily").json()
        self.assertEqual(daily[-1]["amount"], 1250)
        self.assertEqual(daily[0]["date"][-2:], "01")


class SettingsTests(ApiTestCase):
    def test_settings_created_lazily_and_validated(self) -> None:
        self.register()

        self.assertEqual(self.client.get("/api/settings").json()["baseCurrency"], "USD")

        bad = self.client.patch("/api/settings", json={"baseCurrency": "ZZZ"})
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(bad.json()["field"], "baseCurrency")


class RecurringTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.register()

    def recurring_body(self, **overrides) -> dict:
        body = {
            "amount": 1500,
            "currency": "USD",
            "description": "Gym",
            "category": "Health",
            "frequency": "weekly",
            "nextDueDate": (datetime.now() - timedelta(days=14)).replace(microsecond=0).isoformat(),
        }
        body.update(overrides)
        return body

    def test_rejects_unknown_frequency(self) -> None:
        response = self.client.post("/api/recurring", json=self.recurring_body(frequency="hourly"))

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["field"], "frequency")

    def test_process_materializes_due_occurrences_once(self) -> None:
        recurring = self.client.post("/api/recurring", json=self.recurring_body()).json()

        processed = self.client.post("/api/recurring/process").json()
        self.assertEqual(processed, {"created": 3})

        rows = self.client.get("/api/expenses").json()
        self.assertEqual(len(rows), 3)
        self.assertTrue(all(row["isRecurring"] and row["recurringId"] == recurring["id"] for row in rows))

        self.assertEqual(self.client.post("/api/recurring/process").json(), {"created": 0})
        listed = self.client.get("/api/recurring").json()
        self.assertGreater(datetime.fromisoformat(listed[0]["nextDueDate"]), datetime.now())

    def test_delete_is_soft(self) -> None:
        recurring = self.client.post("/api/recurring", json=self.recurring_body()).json()

        self.assertEqual(self.client.delete(f"/api/recurring/{recurring['id']}").status_code, 204)
        self.assertEqual(self.client.get("/api/recurring").json(), [])
        self.assertEqual(self.client.delete(f"/api/recurring/{recurring['id']}").status_code, 404)
        self.assertEqual(self.client.post("/api/recurring/process").json(), {"created": 0})


class InvoiceTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.register()

    def upload(self) -> dict:
        response = self.client.post("/api/invoices/upload", files={"file": ("receipt.png", b"\x89PNG data", "image/png")})
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def test_upload_requires_file(self) -> None:
        self.assertEqual(self.client.post("/api/invoices/upload").status_code, 400)

    def test_upload_rejects_oversized_files(self) -> None:
        self.app.state.context.settings.max_upload_bytes = 4

        response = self.client.post("/api/invoices/upload", files={"file": ("big.png", b"0123456789", "image/png")})

        self.assertEqual(response.status_code, 413)

    def test_process_creates_expense_from_extraction(self) -> None:
        invoice = self.upload()
        self.assertEqual(invoice["status"], "pending")
        self.assertTrue(Path(invoice["fileUrl"]).exists())
        self.extractor.result = {
            "amount": 4599,
            "date": "2024-03-05",
            "description": "Team lunch",
            "category": "food",
            "type": "expense",
        }

        response = self.client.post(f"/api/invoices/{invoice['id']}/process")

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["success"], True)
        self.assertEqual(self.extractor.paths, [invoice["fileUrl"]])
        stored = self.client.get("/api/invoices").json()[0]
        self.assertEqual(stored["status"], "processed")
        self.assertEqual(stored["processedData"]["description"], "Team lunch")
        expense = self.client.get("/api/expenses").json()[0]
        self.assertEqual((expense["amount"], expense["category"]), (4599, "Food"))

    def test_incomplete_extraction_creates_no_expense(self) -> None:
        invoice = self.upload()
        self.extractor.result = {"date": "2024-03-05"}

        self.client.post(f"/api/invoices/{invoice['id']}/process")

        self.assertEqual(self.client.get("/api/expenses").json(), [])

    def test_failed_extraction_marks_invoice(self) -> None:
        invoice = self.upload()
        self.extractor.error = InvoiceExtractionError("boom")

        response = self.client.post(f"/api/invoices/{invoice['id']}/process")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"message": "Failed to process invoice"})
        self.assertEqual(self.client.get("/api/invoices").json()[0]["status"], "failed")

    def test_mistyped_extraction_marks_invoice_failed(self) -> None:
        for result in (
            {"amount": 1200, "description": "Lunch", "date": 20240305},
            {"amount": 1200, "description": 42},
            ["not", "an", "object"],
        ):
            invoice = self.upload()
            self.extractor.result = result

            response = self.client.post(f"/api/invoices/{invoice['id']}/process")

            self.assertEqual(response.status_code, 500, result)
            self.assertEqual(response.json(), {"message": "Failed to process invoice"})
            stored = next(row for row in self.client.get("/api/invoices").json() if row["id"] == invoice["id"])
            self.assertEqual(stored["status"], "failed")
        self.assertEqual(self.client.get("/api/expenses").json(), [])

    def test_unusable_amount_is_processed_without_expense(self) -> None:
        invoice = self.upload()
        self.extractor.result = {"amount": "inf", "description": "Mystery", "category": "Pets"}

        response = self.client.post(f"/api/invoices/{invoice['id']}/process")

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(self.client.get("/api/invoices").json()[0]["status"], "processed")
        self.assertEqual(self.client.get("/api/expenses").json(), [])

    def test_missing_invoice_and_missing_key(self) -> None:
        self.assertEqual(self.client.post("/api/invoices/42/process").status_code, 404)

        invoice = self.upload()
        self.app.state.context.invoice_extractor = None
        response = self.client.post(f"/api/invoices/{invoice['id']}/process")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"message": "No AI API Key configured"})


if __name__ == "__main__":
    unittest.main()
