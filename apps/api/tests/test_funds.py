import importlib
import os
import sys
import tempfile
import unittest


class FundsTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tempdir = tempfile.TemporaryDirectory()
        os.environ["DB_PATH"] = os.path.join(self.tempdir.name, "test.db")
        sys.path.insert(
            0, os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
        )
        import family_finance.main as main

        self.main = importlib.reload(main)
        self.main._init_db()
        self.admin = self.main._create_user(
            self.main.UserCreateRequest(name="Admin", role="admin")
        )
        self.ana = self.main._create_user(self.main.UserCreateRequest(name="Ana"))
        self.bruno = self.main._create_user(self.main.UserCreateRequest(name="Bruno"))
        self.carla = self.main._create_user(self.main.UserCreateRequest(name="Carla"))

    def tearDown(self) -> None:
        self.tempdir.cleanup()


class FundEntriesTest(FundsTestCase):
    def _entry(self, user_id: int, fund_type: str, entry_type: str, amount: float, **extra) -> dict:
        return self.main._create_fund_entry(
            user_id,
            fund_type,
            self.main.FundEntryRequest(type=entry_type, amount=amount, **extra),
        )

    def test_entries_are_signed_by_type(self) -> None:
        income = self._entry(self.ana["id"], "emergency", "income", -200)
        expense = self._entry(self.ana["id"], "emergency", "expense", 50, name="Pneu")
        self.assertAlmostEqual(income["amount"], 200.0, places=2)
        self.assertAlmostEqual(expense["amount"], -50.0, places=2)
        self.assertEqual(expense["source"], "manual")
        self.assertEqual(expense["category"], "emergency")
        with self.assertRaises(self.main.HTTPException) as ctx:
            self._entry(self.ana["id"], "emergency", "transfer", 10)
        self.assertEqual(ctx.exception.status_code, 400)

    def test_summary_balances_in_eur(self) -> None:
        self._entry(self.ana["id"], "car", "income", 200)
        self._entry(self.ana["id"], "car", "income", 100, currency="USD")
        self._entry(self.ana["id"], "car", "expense", 50)
        self._entry(self.bruno["id"], "car", "income", 1000)

        summary = self.main._fund_summary("car", self.ana["id"])
        self.assertAlmostEqual(summary["income"], 292.6, places=2)
        self.assertAlmostEqual(summary["expenses"], 50.0, places=2)
        self.assertAlmostEqual(summary["balance"], 242.6, places=2)
        self.assertEqual(summary["entries"], 3)
        household = self.main._fund_summary("car", None)
        self.assertAlmostEqual(household["balance"], 1242.6, places=2)

    def test_all_funds_listing_and_unknown_type(self) -> None:
        self._entry(self.ana["id"], "allowance", "income", 30)
        payload = self.main.list_funds(x_user_id=str(self.ana["id"]), user_id=None)
        self.assertEqual(
            [item["fund_type"] for item in payload["items"]],
            ["travel", "emergency", "car", "allowance"],
        )
        self.assertAlmostEqual(payload["items"][3]["balance"], 30.0, places=2)
        with self.assertRaises(self.main.HTTPException) as ctx:
            self.main.list_fund_entries("vacation", x_user_id=str(self.ana["id"]), user_id=None)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_delete_entry_checks_fund_and_owner(self) -> None:
        entry = self._entry(self.ana["id"], "travel", "income", 80)
        with self.assertRaises(self.main.HTTPException):
            self.main.delete_fund_entry("car", entry["id"], x_user_id=str(self.ana["id"]))
        with self.assertRaises(self.main.HTTPException):
            self.main.delete_fund_entry("travel", entry["id"], x_user_id=str(self.bruno["id"]))
        result = self.main.delete_fund_entry("travel", entry["id"], x_user_id=str(self.admin["id"]))
        self.assertEqual(result["status"], "deleted")
        self.assertEqual(self.main._list_fund_entries("travel", None), [])


class TravelFundsTest(FundsTestCase):
    def _fund(self, **extra) -> dict:
        payload = {
            "name": "Lisboa 2026",
            "target_amount": 1000,
            "participants": [
                self.main.TravelFundParticipant(user_id=self.ana["id"], contribution=300),
                self.main.TravelFundParticipant(user_id=self.bruno["id"], contribution=200),
            ],
        }
        payload.update(extra)
        return self.main._create_travel_fund(
            self.ana["id"], self.main.TravelFundCreateRequest(**payload)
        )

    def test_total_and_progress_follow_contributions(self) -> None:
        fund = self._fund()
        self.assertAlmostEqual(fund["total"], 500.0, places=2)
        self.assertAlmostEqual(fund["current_amount"], 500.0, places=2)
        self.assertAlmostEqual(fund["progress"], 50.0, places=2)
        self.assertEqual(len(fund["participants"]), 2)

        updated = self.main._update_travel_fund(
            fund["id"],
            self.main.TravelFundUpdateRequest(
                participants=[
                    self.main.TravelFundParticipant(user_id=self.ana["id"], contribution=400)
                ]
            ),
        )
        self.assertAlmostEqual(updated["total"], 400.0, places=2)
        self.assertAlmostEqual(updated["current_amount"], 500.0, places=2)
        self.assertEqual(len(updated["participants"]), 1)

    def test_explicit_current_amount_and_missing_target(self) -> None:
        fund = self._fund(target_amount=None, current_amount=120)
        self.assertAlmostEqual(fund["current_amount"], 120.0, places=2)
        self.assertIsNone(fund["progress"])

    def test_participants_must_exist_once(self) -> None:
        with self.assertRaises(self.main.HTTPException) as ctx:
            self._fund(
                participants=[
                    self.main.TravelFundParticipant(user_id=self.ana["id"], contribution=10),
                    self.main.TravelFundParticipant(user_id=self.ana["id"], contribution=20),
                ]
            )
        self.assertEqual(ctx.exception.status_code, 400)
        with self.assertRaises(self.main.HTTPException) as ctx:
            self._fund(participants=[self.main.TravelFundParticipant(user_id=999)])
        self.assertEqual(ctx.exception.status_code, 404)

    def test_only_owner_or_admin_edits_fund(self) -> None:
        fund = self._fund()
        with self.assertRaises(self.main.HTTPException) as ctx:
            self.main.update_travel_fund(
                fund["id"],
                self.main.TravelFundUpdateRequest(name="Renamed"),
                x_user_id=str(self.bruno["id"]),
            )
        self.assertEqual(ctx.exception.status_code, 403)
        with self.assertRaises(self.main.HTTPException) as ctx:
            self.main.update_travel_fund(
                fund["id"],
                self.main.TravelFundUpdateRequest(name="Renamed"),
                x_user_id=str(self.carla["id"]),
            )
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(self.main._get_travel_fund(fund["id"])["name"], "Lisboa 2026")
        for user, name in ((self.ana, "Lisboa 2027"), (self.admin, "Lisboa 2028")):
            result = self.main.update_travel_fund(
                fund["id"],
                self.main.TravelFundUpdateRequest(name=name),
                x_user_id=str(user["id"]),
            )
            self.assertEqual(result["travel_fund"]["name"], name)

    def test_visibility_for_owner_participant_and_admin(self) -> None:
        fund = self._fund()
        for user in (self.ana, self.bruno, self.admin):
            listed = self.main.list_travel_funds(x_user_id=str(user["id"]))
            self.assertEqual([item["id"] for item in listed["items"]], [fund["id"]])
        self.assertEqual(self.main.list_travel_funds(x_user_id=str(self.carla["id"]))["items"], [])
        with self.assertRaises(self.main.HTTPException) as ctx:
            self.main.get_travel_fund(fund["id"], x_user_id=str(self.carla["id"]))
        self.assertEqual(ctx.exception.status_code, 404)
        with self.assertRaises(self.main.HTTPException):
            self.main.delete_travel_fund(fund["id"], x_user_id=str(self.bruno["id"]))
        result = self.main.delete_travel_fund(fund["id"], x_user_id=str(self.ana["id"]))
        self.assertEqual(result["status"], "deleted")


if __name__ == "__main__":
    unittest.main()
