import importlib
import os
import sys
import tempfile
import unittest


class InvestmentPortfolioTest(unittest.TestCase):
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

    def tearDown(self) -> None:
        self.tempdir.cleanup()

    def _buy(self, asset: str, quantity: float, unit_price: float, currency: str = "EUR") -> dict:
        return self.main._create_investment(
            self.user["id"],
            self.main.InvestmentCreateRequest(
                asset=asset, quantity=quantity, unit_price=unit_price, currency=currency
            ),
        )

    def test_portfolio_groups_purchases_by_asset(self) -> None:
        self._buy("aapl", 2, 100)
        self._buy("AAPL", 2, 150)
        self._buy("VWCE", 1, 100, currency="USD")

        portfolio = self.main._portfolio_tracker(self.main._list_investments(self.user["id"]))
        self.assertEqual(portfolio["asset_count"], 2)
        self.assertEqual(portfolio["transaction_count"], 3)
        self.assertAlmostEqual(portfolio["total_portfolio_value"], 592.6, places=2)
        apple = portfolio["items"][0]
        self.assertEqual(apple["asset"], "AAPL")
        self.assertAlmostEqual(apple["total_quantity"], 4.0, places=2)
        self.assertAlmostEqual(apple["total_value"], 500.0, places=2)
        self.assertAlmostEqual(apple["average_price"], 125.0, places=2)
        self.assertEqual(len(apple["investments"]), 2)
        self.assertAlmostEqual(portfolio["items"][1]["total_value"], 92.6, places=2)

    def test_validation(self) -> None:
        for quantity, unit_price in ((0, 10), (1, -1)):
            with self.assertRaises(self.main.HTTPException) as ctx:
                self._buy("AAPL", quantity, unit_price)
            self.assertEqual(ctx.exception.status_code, 400)

    def test_update_and_delete(self) -> None:
        investment = self._buy("AAPL", 2, 100)
        updated = self.main._update_investment(
            investment["id"],
            self.main.InvestmentUpdateRequest(quantity=3, yahoo_symbol="aapl"),
        )
        self.assertAlmostEqual(updated["quantity"], 3.0, places=2)
        self.assertEqual(updated["yahoo_symbol"], "AAPL")
        self.assertAlmostEqual(updated["unit_price"], 100.0, places=2)
        result = self.main.delete_investment(investment["id"], x_user_id=str(self.user["id"]))
        self.assertEqual(result["status"], "deleted")
        self.assertEqual(self.main._list_investments(self.user["id"]), [])


if __name__ == "__main__":
    unittest.main()
