import importlib
import os
import sys
import tempfile
import unittest


class UsersTest(unittest.TestCase):
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
        self.bruno = self.main._create_user(
            self.main.UserCreateRequest(name="Bruno", salary=2500, salary_currency="brl")
        )

    def tearDown(self) -> None:
        self.tempdir.cleanup()

    def test_names_are_unique_ignoring_case(self) -> None:
        with self.assertRaises(self.main.HTTPException) as ctx:
            self.main._create_user(self.main.UserCreateRequest(name="  ANA "))
        self.assertEqual(ctx.exception.status_code, 409)

    def test_lookup_by_name(self) -> None:
        payload = self.main.lookup_user("ana")
        self.assertEqual(payload["user"]["id"], self.ana["id"])
        with self.assertRaises(self.main.HTTPException) as ctx:
            self.main.lookup_user("Carla")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_salary_is_stored_with_currency(self) -> None:
        self.assertEqual(self.bruno["salary"], 2500)
        self.assertEqual(self.bruno["salary_currency"], "BRL")
        updated = self.main.set_user_salary(
            self.ana["id"],
            self.main.UserSalaryRequest(salary=3100, currency="EUR"),
            x_user_id=str(self.ana["id"]),
        )
        self.assertEqual(updated["user"]["salary"], 3100)
        cleared = self.main.clear_user_salary(self.ana["id"], x_user_id=str(self.ana["id"]))
        self.assertIsNone(cleared["user"]["salary"])
        self.assertIsNone(cleared["user"]["salary_currency"])

    def test_acting_user_is_required(self) -> None:
        for value in (None, "abc", "999"):
            with self.assertRaises(self.main.HTTPException) as ctx:
                self.main._require_user(value)
            self.assertEqual(ctx.exception.status_code, 401)

    def test_regular_user_cannot_act_for_others(self) -> None:
        ana = self.main._get_user(self.ana["id"])
        with self.assertRaises(self.main.HTTPException) as ctx:
            self.main._scope_user_id(ana, self.bruno["id"])
        self.assertEqual(ctx.exception.status_code, 404)
        with self.assertRaises(self.main.HTTPException) as ctx:
            self.main._owner_for_write(ana, self.bruno["id"])
        self.assertEqual(ctx.exception.status_code, 403)
        with self.assertRaises(self.main.HTTPException) as ctx:
            self.main.update_user(
                self.bruno["id"],
                self.main.UserUpdateRequest(name="Bruno Silva"),
                x_user_id=str(self.ana["id"]),
            )
        self.assertEqual(ctx.exception.status_code, 403)

    def test_admin_scope_covers_everyone(self) -> None:
        admin = self.main._get_user(self.admin["id"])
        self.assertIsNone(self.main._scope_user_id(admin, None))
        self.assertEqual(self.main._scope_user_id(admin, self.ana["id"]), self.ana["id"])
        self.assertEqual(self.main._owner_for_write(admin, self.bruno["id"]), self.bruno["id"])
        with self.assertRaises(self.main.HTTPException) as ctx:
            self.main._owner_for_write(admin, 999)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_only_admin_changes_roles(self) -> None:
        with self.assertRaises(self.main.HTTPException) as ctx:
            self.main.update_user(
                self.ana["id"],
                self.main.UserUpdateRequest(role="admin"),
                x_user_id=str(self.ana["id"]),
            )
        self.assertEqual(ctx.exception.status_code, 403)
        promoted = self.main.update_user(
            self.ana["id"],
            self.main.UserUpdateRequest(role="admin"),
            x_user_id=str(self.admin["id"]),
        )
        self.assertEqual(promoted["user"]["role"], "admin")

    def test_admin_role_on_signup_needs_an_admin_caller(self) -> None:
        anonymous = self.main.create_user(
            self.main.UserCreateRequest(name="Mallory", role="admin"), x_user_id=None
        )
        self.assertEqual(anonymous["user"]["role"], "user")
        by_user = self.main.create_user(
            self.main.UserCreateRequest(name="Dora", role="admin"),
            x_user_id=str(self.ana["id"]),
        )
        self.assertEqual(by_user["user"]["role"], "user")
        by_admin = self.main.create_user(
            self.main.UserCreateRequest(name="Edu", role="admin"),
            x_user_id=str(self.admin["id"]),
        )
        self.assertEqual(by_admin["user"]["role"], "admin")

    def test_first_user_may_be_admin(self) -> None:
        self.main._delete_user(self.admin["id"])
        self.main._delete_user(self.ana["id"])
        self.main._delete_user(self.bruno["id"])
        first = self.main.create_user(
            self.main.UserCreateRequest(name="Fundadora", role="admin"), x_user_id=None
        )
        self.assertEqual(first["user"]["role"], "admin")

    def test_delete_user_removes_owned_records(self) -> None:
        self.main._create_expense(
            self.bruno["id"],
            self.main.ExpenseCreateRequest(name="Mercado", amount=20, category="supermercado"),
        )
        self.main.delete_user(self.bruno["id"], x_user_id=str(self.admin["id"]))
        self.assertIsNone(self.main._get_user(self.bruno["id"]))
        self.assertEqual(self.main._list_expenses(self.bruno["id"]), [])


if __name__ == "__main__":
    unittest.main()
