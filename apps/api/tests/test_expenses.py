import importlib
import os
import sys
import tempfile
import unittest
from datetime import date


class ExpensesTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tempdir = tempfile.TemporaryDirectory()
        os.environ["DB_PATH"] = os.path.join(self.tempdir.name, "test.db")
        sys.path.insert(
            0, os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
        )
        import family_finance.main as main

        self.main = importlib.reload(main)
        self.main._init_db()
        self.user = self.main._create_user(self.main.UserCreateRequest(name="Ana"))
        self.other = self.main._create_user(self.main.UserCreateRequest(name="Bruno"))

    def tearDown(self) -> None:
        self.tempdir.cleanup()

    def _expense(self, user_id: int, name: str, amount: float, when: str, **extra) -> dict:
        return self.main._create_expense(
            user_id,
            self.main.ExpenseCreateRequest(name=name, amount=amount, date=when, **extra),
        )

    def test_amount_is_always_stored_negative(self) -> None:
        positive = self._expense(self.user["id"], "Mercado", 45.5, "2025-03-10")
        negative = self._expense(self.user["id"], "Padaria", -8, "2025-03-11")
        self.assertAlmostEqual(positive["amount"], -45.5, places=2)
        self.assertAlmostEqual(negative["amount"], -8.0, places=2)
        self.assertEqual(positive["category"], "outros")
        with self.assertRaises(self.main.HTTPException) as ctx:
            self._expense(self.user["id"], "Nada", 0, "2025-03-11")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_category_must_be_known(self) -> None:
        by_label = self._expense(self.user["id"], "Consulta", 80, "2025-03-10", category="Saúde")
        self.assertEqual(by_label["category"], "saude")
        with self.assertRaises(self.main.HTTPException) as ctx:
            self._expense(self.user["id"], "Pet", 10, "2025-03-10", category="pets")
        self.assertEqual(ctx.exception.status_code, 400)
        categories = self.main.list_expense_categories()["items"]
        self.assertEqual(len(categories), 25)
        self.assertIn({"value": "roupas", "label": "Roupas"}, categories)

    def test_list_filters_by_month_and_user(self) -> None:
        self._expense(self.user["id"], "Aluguel", 900, "2025-03-01", category="aluguel")
        self._expense(self.user["id"], "Netflix", 15.99, "2025-04-02", category="netflix")
        self._expense(self.other["id"], "Xbox", 12, "2025-03-05", category="xbox")

        march = self.main._list_expenses(self.user["id"], month="2025-03")
        self.assertEqual([item["name"] for item in march], ["Aluguel"])
        self.assertEqual(len(self.main._list_expenses(None, month="2025-03")), 2)
        streaming = self.main._list_expenses(self.user["id"], category="netflix")
        self.assertEqual(len(streaming), 1)

        routed = self.main.list_expenses(
            x_user_id=str(self.other["id"]), user_id=None, month="2025-03", category=None
        )
        self.assertEqual([item["name"] for item in routed["items"]], ["Xbox"])

    def test_history_groups_previous_months(self) -> None:
        self._expense(self.user["id"], "Mercado", 45, "2025-04-03")
        self._expense(self.user["id"], "Farmacia", 20, "2025-03-12")
        self._expense(self.user["id"], "Cinema", 10, "2025-03-20", currency="USD")
        self._expense(self.user["id"], "Curso", 100, "2025-01-05")

        history = self.main._expense_history(self.user["id"], today=date(2025, 4, 15))
        self.assertEqual(history["month"], "2025-04")
        self.assertEqual([item["name"] for item in history["current_month"]], ["Mercado"])
        self.assertAlmostEqual(history["current_total"], 45.0, places=2)
        months = [group["month"] for group in history["previous_months"]]
        self.assertEqual(months, ["2025-03", "2025-01"])
        march = history["previous_months"][0]
        self.assertEqual(march["label"], "março de 2025")
        self.assertAlmostEqual(march["total"], 29.26, places=2)
        self.assertEqual(history["previous_months"][1]["label"], "janeiro de 2025")

    def test_history_ignores_months_after_current(self) -> None:
        self._expense(self.user["id"], "Mercado", 45, "2025-04-03")
        self._expense(self.user["id"], "Viagem", 300, "2025-06-01")
        self._expense(self.user["id"], "Farmacia", 20, "2025-03-12")

        history = self.main._expense_history(self.user["id"], today=date(2025, 4, 15))
        self.assertEqual([item["name"] for item in history["current_month"]], ["Mercado"])
        self.assertEqual(
            [group["month"] for group in history["previous_months"]], ["2025-03"]
        )

    def test_update_keeps_sign_and_ownership(self) -> None:
        expense = self._expense(self.user["id"], "Uber", 18, "2025-03-10")
        updated = self.main._update_expense(
            expense["id"],
            self.main.ExpenseUpdateRequest(amount=22, category="transporte"),
        )
        self.assertAlmostEqual(updated["amount"], -22.0, places=2)
        self.assertEqual(updated["category"], "transporte")
        self.assertEqual(updated["name"], "Uber")

        with self.assertRaises(self.main.HTTPException) as ctx:
            self.main.delete_expense(expense["id"], x_user_id=str(self.other["id"]))
        self.assertEqual(ctx.exception.status_code, 404)
        result = self.main.delete_expense(expense["id"], x_user_id=str(self.user["id"]))
        self.assertEqual(result["status"], "deleted")
        self.assertIsNone(self.main._get_expense(expense["id"]))


if __name__ == "__main__":
    unittest.main()
