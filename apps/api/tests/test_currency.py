import importlib
import os
import sys
import tempfile
import unittest


class CurrencyConversionTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tempdir = tempfile.TemporaryDirectory()
        os.environ["DB_PATH"] = os.path.join(self.tempdir.name, "test.db")
        sys.path.insert(
            0, os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
        )
        import family_finance.main as main

        self.main = importlib.reload(main)
        self.main._init_db()

    def tearDown(self) -> None:
        self.tempdir.cleanup()

    def test_same_currency_is_unchanged(self) -> None:
        self.assertEqual(self.main._convert_currency(12.345, "BRL", "BRL"), 12.345)

    def test_converts_through_eur_rates(self) -> None:
        self.assertAlmostEqual(self.main._convert_currency(100, "USD", "EUR"), 92.6, places=2)
        self.assertAlmostEqual(self.main._convert_currency(100, "EUR", "BRL"), 606.06, places=2)
        self.assertAlmostEqual(self.main._convert_currency(10, "GBP", "USD"), 12.7, places=2)

    def test_unknown_currency_uses_unit_rate(self) -> None:
        self.assertAlmostEqual(self.main._convert_currency(50, "JPY", "EUR"), 50.0, places=2)

    def test_symbols_and_listing(self) -> None:
        self.assertEqual(self.main._currency_symbol("BRL"), "R$")
        self.assertEqual(self.main._currency_symbol("CHF"), "CHF")
        payload = self.main.list_currencies()
        self.assertEqual(payload["base"], "EUR")
        codes = {item["code"] for item in payload["items"]}
        self.assertEqual(codes, {"EUR", "USD", "BRL", "GBP"})

    def test_rejects_unsupported_currency_on_input(self) -> None:
        with self.assertRaises(self.main.HTTPException) as ctx:
            self.main._normalize_currency("jpy")
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(self.main._normalize_currency(" usd "), "USD")

    def test_parse_number_handles_local_formats(self) -> None:
        self.assertAlmostEqual(self.main._parse_number("1.234,56"), 1234.56, places=2)
        self.assertAlmostEqual(self.main._parse_number("R$ 1,234.50"), 1234.5, places=2)
        self.assertAlmostEqual(self.main._parse_number("(12,50)"), -12.5, places=2)
        self.assertIsNone(self.main._parse_number(""))


if __name__ == "__main__":
    unittest.main()
