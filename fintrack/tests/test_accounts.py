import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import insert

from fintrack import accounts as account_store
from fintrack import categories as category_store
from fintrack import ledger
from fintrack.db import create_db_engine, init_db, users
from fintrack.errors import Conflict, NotFound, ValidationError
from fintrack.patches import AccountPatch


def _create_user(engine, email: str) -> int:
    with engine.begin() as conn:
        return conn.execute(
            insert(users).values(email=email, hashed_password="x").returning(users.c.id)
        ).scalar_one()


class AccountStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_db_engine("sqlite://")
        init_db(self.engine)
        self.user_id = _create_user(self.engine, "owner@example.com")
        self.other_user_id = _create_user(self.engine, "other@example.com")

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_create_sets_balance_and_opening_balance(self) -> None:
        account = account_store.create_account(
            self.engine, self.user_id, " Checking ", "Bank", initial_balance=Decimal("50")
        )

        self.assertEqual(account["name"], "Checking")
        self.assertEqual(account["type"], "bank")
        self.assertEqual(account["balance"], Decimal("50"))
        self.assertEqual(account["initial_balance"], Decimal("50"))

    def test_create_rejects_unknown_type(self) -> None:
        with self.assertRaises(ValidationError):
            account_store.create_account(self.engine, self.user_id, "Stash", "mattress")

    def test_balance_beyond_money_column_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            account_store.create_account(
                self.engine,
                self.user_id,
                "Huge",
                "bank",
                initial_balance=Decimal("12345678901234567.89"),
            )
        account = account_store.create_account(
            self.engine, self.user_id, "Card", "credit-card", initial_balance=Decimal("-10")
        )
        with self.assertRaises(ValidationError):
            account_store.update_account(
                self.engine,
                account["id"],
                self.user_id,
                AccountPatch(balance=Decimal("-1000000000000")),
            )

        self.assertEqual(
            account_store.get_account(self.engine, account["id"], self.user_id)["balance"],
            Decimal("-10"),
        )

    def test_credit_card_type_accepts_underscore_spelling(self) -> None:
        account = account_store.create_account(self.engine, self.user_id, "Visa", "credit_card")

        self.assertEqual(account["type"], "credit-card")

    def test_other_users_account_is_not_found(self) -> None:
        account = account_store.create_account(self.engine, self.user_id, "Wallet", "wallet")

        with self.assertRaises(NotFound):
            account_store.get_account(self.engine, account["id"], self.other_user_id)
        with self.assertRaises(NotFound):
            account_store.update_account(
                self.engine, account["id"], self.other_user_id, AccountPatch(name="Mine")
            )

    def test_list_only_returns_owned_accounts(self) -> None:
        account_store.create_account(self.engine, self.user_id, "A", "bank")
        account_store.create_account(self.engine, self.other_user_id, "B", "bank")

        names = [row["name"] for row in account_store.list_accounts(self.engine, self.user_id)]

        self.assertEqual(names, ["A"])

    def test_update_name_keeps_balance(self) -> None:
        account = account_store.create_account(
            self.engine, self.user_id, "Old", "bank", initial_balance=Decimal("10")
        )

        updated = account_store.update_account(
            self.engine, account["id"], self.user_id, AccountPatch(name="New", type="other")
        )

        self.assertEqual(updated["name"], "New")
        self.assertEqual(updated["type"], "other")
        self.assertEqual(updated["balance"], Decimal("10"))

    def test_delete_blocked_while_transactions_exist(self) -> None:
        account = account_store.create_account(self.engine, self.user_id, "Bank", "bank")
        category = category_store.create_category(self.engine, self.user_id, "Salary", "income")
        txn = ledger.create_transaction(
            self.engine,
            self.user_id,
            Decimal("5"),
            "income",
            account["id"],
            category["id"],
            date(2024, 1, 2),
        )

        with self.assertRaises(Conflict):
            account_store.delete_account(self.engine, account["id"], self.user_id)

        ledger.delete_transaction(self.engine, txn["id"], self.user_id)
        account_store.delete_account(self.engine, account["id"], self.user_id)
        with self.assertRaises(NotFound):
            account_store.get_account(self.engine, account["id"], self.user_id)


class DirectBalanceEditTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_db_engine("sqlite://")
        init_db(self.engine)
        self.user_id = _create_user(self.engine, "owner@example.com")
        self.account = account_store.create_account(
            self.engine, self.user_id, "Bank", "bank", initial_balance=Decimal("50")
        )
        self.category = category_store.create_category(
            self.engine, self.user_id, "Salary", "income"
        )
        ledger.create_transaction(
            self.engine,
            self.user_id,
            Decimal("100"),
            "income",
            self.account["id"],
            self.category["id"],
            date(2024, 3, 1),
        )

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_balance_edit_rebases_opening_balance(self) -> None:
        updated = account_store.update_account(
            self.engine, self.account["id"], self.user_id, AccountPatch(balance=Decimal("500"))
        )

        self.assertEqual(updated["balance"], Decimal("500"))
        self.assertEqual(updated["initial_balance"], Decimal("400"))

    def test_ledger_keeps_working_after_balance_edit(self) -> None:
        account_store.update_account(
            self.engine, self.account["id"], self.user_id, AccountPatch(balance=Decimal("500"))
        )
        ledger.create_transaction(
            self.engine,
            self.user_id,
            Decimal("25"),
            "income",
            self.account["id"],
            self.category["id"],
            date(2024, 3, 2),
        )

        recomputed = account_store.recompute_balance(self.engine, self.account["id"], self.user_id)

        self.assertEqual(recomputed["balance"], Decimal("525"))

    def test_clearing_balance_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            account_store.update_account(
                self.engine, self.account["id"], self.user_id, AccountPatch(balance=None)
            )

    def test_detail_includes_recent_transactions(self) -> None:
        detail = account_store.get_account_detail(self.engine, self.account["id"], self.user_id)

        self.assertEqual(detail["balance"], Decimal("150"))
        self.assertEqual(len(detail["transactions"]), 1)
        self.assertEqual(detail["transactions"][0]["amount"], Decimal("100"))


if __name__ == "__main__":
    unittest.main()
