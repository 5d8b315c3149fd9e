import os
import sqlite3
import tempfile
import unittest

from domain.errors import LimitExceeded, StoreError
from domain.models import MAX_ACCOUNTS, UNRANKED, Ladder, LinkedAccount
from infrastructure.db.account_repository_sqlite import SqliteAccountRepository


def _account(user_id: str, account_id: str, soloq: str = UNRANKED) -> LinkedAccount:
    return LinkedAccount(
        user_id=user_id,
        account_id=account_id,
        display_name=f"name-{account_id}",
        tag_line="EUW",
        secondary_account_id=f"tft-{account_id}",
        tiers={Ladder.SOLOQ: soloq},
    )


class SqliteAccountRepositoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmp.name, "accounts.db")
        self.repo = SqliteAccountRepository(self.db_path)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_upsert_inserts_then_updates(self):
        info = self.repo.upsert(_account("u1", "p1", soloq="GOLD"))
        self.assertTrue(info.created)

        info = self.repo.upsert(_account("u1", "p1", soloq="platinum"))
        self.assertFalse(info.created)

        accounts = self.repo.list_by_user("u1")
        self.assertEqual(len(accounts), 1)
        self.assertEqual(accounts[0].tier(Ladder.SOLOQ), "PLATINUM")
        self.assertEqual(accounts[0].tier(Ladder.TFT), UNRANKED)
        self.assertEqual(accounts[0].secondary_account_id, "tft-p1")
        self.assertIsNotNone(accounts[0].last_updated)

    def test_cap_is_enforced_without_writing(self):
        for index in range(MAX_ACCOUNTS):
            self.repo.upsert(_account("u1", f"p{index}"))

        with self.assertRaises(LimitExceeded):
            self.repo.upsert(_account("u1", "extra"))

        self.assertEqual(self.repo.count_by_user("u1"), MAX_ACCOUNTS)
        self.assertIsNone(self.repo.get_by_account_id("extra"))

    def test_updating_an_owned_account_at_the_cap_is_allowed(self):
        for index in range(MAX_ACCOUNTS):
            self.repo.upsert(_account("u1", f"p{index}"))

        info = self.repo.upsert(_account("u1", "p0", soloq="DIAMOND"))

        self.assertFalse(info.created)
        self.assertEqual(self.repo.get_by_account_id("p0").tier(Ladder.SOLOQ), "DIAMOND")

    def test_account_is_moved_to_the_new_owner(self):
        self.repo.upsert(_account("u1", "p1"))
        info = self.repo.upsert(_account("u2", "p1"))

        self.assertFalse(info.created)
        self.assertEqual(self.repo.list_by_user("u1"), [])
        self.assertEqual(self.repo.get_by_account_id("p1").user_id, "u2")

    def test_list_by_user_keeps_link_order(self):
        for account_id in ("b", "a", "c"):
            self.repo.upsert(_account("u1", account_id))
        self.repo.upsert(_account("u2", "z"))

        ids = [account.account_id for account in self.repo.list_by_user("u1")]
        self.assertEqual(ids, ["b", "a", "c"])

    def test_delete_requires_matching_owner(self):
        self.repo.upsert(_account("u1", "p1"))

        self.assertFalse(self.repo.delete("u2", "p1"))
        self.assertTrue(self.repo.delete("u1", "p1"))
        self.assertFalse(self.repo.delete("u1", "p1"))
        self.assertIsNone(self.repo.get_by_account_id("p1"))

    def test_get_by_account_id_returns_none_for_unknown(self):
        self.assertIsNone(self.repo.get_by_account_id("missing"))

    def test_update_tiers_only_touches_owned_rows(self):
        self.repo.upsert(_account("u1", "p1", soloq="GOLD"))

        updated = self.repo.update_tiers("u1", "p1", {Ladder.SOLOQ: "platinum", Ladder.TFT: "GOLD"})

        self.assertTrue(updated)
        account = self.repo.get_by_account_id("p1")
        self.assertEqual(account.tier(Ladder.SOLOQ), "PLATINUM")
        self.assertEqual(account.tier(Ladder.TFT), "GOLD")
        self.assertEqual(account.tier(Ladder.FLEX), UNRANKED)
        self.assertFalse(self.repo.update_tiers("u2", "p1", {Ladder.SOLOQ: "IRON"}))
        self.assertEqual(self.repo.get_by_account_id("p1").tier(Ladder.SOLOQ), "PLATINUM")

    def test_update_tiers_never_inserts(self):
        self.assertFalse(self.repo.update_tiers("u1", "gone", {Ladder.SOLOQ: "GOLD"}))
        self.assertIsNone(self.repo.get_by_account_id("gone"))

    def _legacy_db(self, statements) -> str:
        path = os.path.join(self._tmp.name, "lol_accounts.db")
        conn = sqlite3.connect(path)
        with conn:
            for statement in statements:
                conn.execute(statement)
        conn.close()
        return path

    def test_previous_bot_accounts_are_imported_once(self):
        path = self._legacy_db(
            [
                """
                CREATE TABLE accounts (
                    discordId TEXT NOT NULL,
                    puuid TEXT PRIMARY KEY,
                    puuidTFT TEXT,
                    summonerName TEXT,
                    tagLine TEXT,
                    rankTier TEXT,
                    rankFlex TEXT DEFAULT 'UNRANKED',
                    lastUpdated DATETIME DEFAULT CURRENT_TIMESTAMP
                )
                """,
                "INSERT INTO accounts (discordId, puuid, puuidTFT, summonerName, tagLine, rankTier) "
                "VALUES ('u1', 'old', 'tft-old', 'Old', 'EUW', 'silver')",
                "INSERT INTO accounts (discordId, puuid, summonerName, tagLine, rankTier, rankFlex) "
                "VALUES ('u1', 'older', 'Older', 'EUW', '', 'GOLD')",
            ]
        )

        repo = SqliteAccountRepository(path)

        accounts = repo.list_by_user("u1")
        self.assertEqual([a.account_id for a in accounts], ["old", "older"])
        self.assertEqual(accounts[0].secondary_account_id, "tft-old")
        self.assertEqual(accounts[0].tier(Ladder.SOLOQ), "SILVER")
        self.assertEqual(accounts[0].tier(Ladder.DOUBLEUP), UNRANKED)
        self.assertIsNone(accounts[1].secondary_account_id)
        self.assertEqual(accounts[1].tier(Ladder.SOLOQ), UNRANKED)
        self.assertEqual(accounts[1].tier(Ladder.FLEX), "GOLD")

        self.assertTrue(repo.delete("u1", "old"))
        repo = SqliteAccountRepository(path)
        self.assertIsNone(repo.get_by_account_id("old"))

    def test_older_linked_accounts_table_gains_new_columns(self):
        path = self._legacy_db(
            [
                """
                CREATE TABLE linked_accounts (
                    user_id TEXT NOT NULL,
                    account_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    tag_line TEXT NOT NULL,
                    tier_soloq TEXT NOT NULL DEFAULT 'UNRANKED',
                    last_updated TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """,
                "INSERT INTO linked_accounts (user_id, account_id, display_name, tag_line, tier_soloq) "
                "VALUES ('u1', 'p1', 'Main', 'EUW', 'SILVER')",
            ]
        )

        account = SqliteAccountRepository(path).get_by_account_id("p1")

        self.assertEqual(account.tier(Ladder.SOLOQ), "SILVER")
        self.assertEqual(account.tier(Ladder.DOUBLEUP), UNRANKED)
        self.assertIsNone(account.secondary_account_id)

    def test_driver_errors_become_store_errors(self):
        with self.assertRaises(StoreError):
            SqliteAccountRepository(os.path.join(self._tmp.name, "missing", "dir", "x.db"))


if __name__ == "__main__":
    unittest.main()
