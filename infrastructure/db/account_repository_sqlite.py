from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Mapping, Optional

from domain.errors import LimitExceeded, StoreError
from domain.models import MAX_ACCOUNTS, UNRANKED, Ladder, LinkedAccount, UpsertInfo, canonical_tier
from domain.repositories import AccountRepository

from infrastructure.db.schema import ACCOUNT_COLUMNS, TIER_COLUMNS


log = logging.getLogger(__name__)

_SELECT_COLUMNS = ", ".join(ACCOUNT_COLUMNS + ["last_updated"])


class SqliteAccountRepository(AccountRepository):
    """
    SQLite-backed implementation of `AccountRepository`.

    Manages the `linked_accounts` table. `account_id` is the primary key so
    a Riot account has exactly one owner; `user_id` is indexed for the
    "all accounts of this user" query.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._ensure_table()

    def _get_connection(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path)

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        try:
            conn = self._get_connection()
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open {self._db_path}: {exc}") from exc
        try:
            with conn:
                yield conn.cursor()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        finally:
            conn.close()

    def _ensure_table(self) -> None:
        tier_defs = ",\n".join(
            f"    {TIER_COLUMNS[ladder]} TEXT NOT NULL DEFAULT '{UNRANKED}'" for ladder in Ladder
        )
        with self._cursor() as cur:
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS linked_accounts (
                    user_id TEXT NOT NULL,
                    account_id TEXT PRIMARY KEY,
                    secondary_account_id TEXT,
                    display_name TEXT NOT NULL,
                    tag_line TEXT NOT NULL,
                {tier_defs},
                    last_updated TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_linked_accounts_user ON linked_accounts (user_id)"
            )
            self._migrate(cur)
            self._import_legacy_accounts(cur)

    @staticmethod
    def _migrate(cur: sqlite3.Cursor) -> None:
        """Add the columns introduced after a table was first created."""

        cur.execute("PRAGMA table_info(linked_accounts)")
        columns = {row[1] for row in cur.fetchall()}

        if "secondary_account_id" not in columns:
            log.info("Adding column 'secondary_account_id'")
            cur.execute("ALTER TABLE linked_accounts ADD COLUMN secondary_account_id TEXT")

        for ladder in Ladder:
            column = TIER_COLUMNS[ladder]
            if column not in columns:
                log.info("Adding column '%s'", column)
                cur.execute(
                    f"ALTER TABLE linked_accounts ADD COLUMN {column} "
                    f"TEXT NOT NULL DEFAULT '{UNRANKED}'"
                )

    @staticmethod
    def _import_legacy_accounts(cur: sqlite3.Cursor) -> None:
        """
        Move rows of the `accounts` table written by the previous bot.

        That table used camelCase columns, and its oldest releases kept the
        solo queue tier in `rankTier`. Once copied the table is renamed to
        `accounts_imported` so unlinked rows are not imported again.
        """

        cur.execute("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'accounts'")
        if cur.fetchone() is None:
            return

        cur.execute("PRAGMA table_info(accounts)")
        legacy = {row[1] for row in cur.fetchall()}
        if not {"discordId", "puuid"} <= legacy:
            log.warning("Table 'accounts' has no discordId/puuid columns; not importing it")
            return

        soloq_source = "rankSoloQ" if "rankSoloQ" in legacy else "rankTier"
        sources = {
            "user_id": ("discordId", None),
            "account_id": ("puuid", None),
            "secondary_account_id": ("puuidTFT", "NULL"),
            "display_name": ("summonerName", "''"),
            "tag_line": ("tagLine", "''"),
            TIER_COLUMNS[Ladder.SOLOQ]: (soloq_source, None),
            TIER_COLUMNS[Ladder.FLEX]: ("rankFlex", None),
            TIER_COLUMNS[Ladder.TFT]: ("rankTFT", None),
            TIER_COLUMNS[Ladder.DOUBLEUP]: ("rankDoubleUp", None),
        }

        selects = []
        for column in ACCOUNT_COLUMNS:
            source, fallback = sources[column]
            if column in TIER_COLUMNS.values():
                value = f"NULLIF(TRIM({source}), '')" if source in legacy else "NULL"
                selects.append(f"UPPER(COALESCE({value}, '{UNRANKED}'))")
            elif source in legacy:
                selects.append(source if fallback is None else f"COALESCE({source}, {fallback})")
            else:
                selects.append(fallback)
        selects.append(
            "COALESCE(lastUpdated, CURRENT_TIMESTAMP)"
            if "lastUpdated" in legacy
            else "CURRENT_TIMESTAMP"
        )

        cur.execute(
            f"""
            INSERT OR IGNORE INTO linked_accounts ({", ".join(ACCOUNT_COLUMNS)}, last_updated)
            SELECT {", ".join(selects)}
            FROM accounts
            WHERE discordId IS NOT NULL AND puuid IS NOT NULL
            ORDER BY rowid
            """
        )
        log.info("Imported %d account(s) from the legacy 'accounts' table", cur.rowcount)
        cur.execute("ALTER TABLE accounts RENAME TO accounts_imported")

    @staticmethod
    def _to_domain(row: tuple) -> LinkedAccount:
        tiers = {ladder: row[5 + index] for index, ladder in enumerate(Ladder)}
        last_updated = row[5 + len(TIER_COLUMNS)]
        return LinkedAccount(
            user_id=str(row[0]),
            account_id=row[1],
            secondary_account_id=row[2],
            display_name=row[3],
            tag_line=row[4],
            tiers=tiers,
            last_updated=_parse_timestamp(last_updated),
        )

    def upsert(self, account: LinkedAccount) -> UpsertInfo:
        with self._cursor() as cur:
            # Advisory cap check: concurrent links for one user may race.
            cur.execute(
                "SELECT account_id FROM linked_accounts WHERE user_id = ?",
                (account.user_id,),
            )
            owned = {row[0] for row in cur.fetchall()}
            if account.account_id not in owned and len(owned) >= MAX_ACCOUNTS:
                log.warning(
                    "Account limit of %d reached for user %s; not linking %s",
                    MAX_ACCOUNTS,
                    account.user_id,
                    account.account_id,
                )
                raise LimitExceeded(account.user_id, MAX_ACCOUNTS)

            cur.execute(
                "SELECT 1 FROM linked_accounts WHERE account_id = ?",
                (account.account_id,),
            )
            created = cur.fetchone() is None

            columns = ACCOUNT_COLUMNS
            updates = ",\n".join(
                f"    {column} = excluded.{column}" for column in columns if column != "account_id"
            )
            cur.execute(
                f"""
                INSERT INTO linked_accounts ({", ".join(columns)})
                VALUES ({", ".join("?" for _ in columns)})
                ON CONFLICT (account_id) DO UPDATE SET
                {updates},
                    last_updated = CURRENT_TIMESTAMP
                """,
                (
                    account.user_id,
                    account.account_id,
                    account.secondary_account_id,
                    account.display_name,
                    account.tag_line,
                    *(account.tier(ladder) for ladder in Ladder),
                ),
            )

        log.info(
            "%s account %s for user %s",
            "Linked" if created else "Updated",
            account.account_id,
            account.user_id,
        )
        return UpsertInfo(created=created)

    def update_tiers(self, user_id: str, account_id: str, tiers: Mapping[Ladder, str]) -> bool:
        assignments = ", ".join(f"{TIER_COLUMNS[ladder]} = ?" for ladder in Ladder)
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE linked_accounts
                SET {assignments}, last_updated = CURRENT_TIMESTAMP
                WHERE user_id = ? AND account_id = ?
                """,
                (
                    *(canonical_tier(tiers.get(ladder)) for ladder in Ladder),
                    user_id,
                    account_id,
                ),
            )
            updated = cur.rowcount == 1

        if not updated:
            log.info(
                "Account %s is no longer linked to user %s; tiers not saved",
                account_id,
                user_id,
            )
        return updated

    def list_by_user(self, user_id: str) -> List[LinkedAccount]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_SELECT_COLUMNS} FROM linked_accounts WHERE user_id = ? ORDER BY rowid",
                (user_id,),
            )
            return [self._to_domain(row) for row in cur.fetchall()]

    def count_by_user(self, user_id: str) -> int:
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM linked_accounts WHERE user_id = ?", (user_id,))
            return int(cur.fetchone()[0])

    def delete(self, user_id: str, account_id: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM linked_accounts WHERE user_id = ? AND account_id = ?",
                (user_id, account_id),
            )
            deleted = cur.rowcount == 1

        if deleted:
            log.info("Deleted account %s of user %s", account_id, user_id)
        else:
            log.warning("No account %s found for user %s to delete", account_id, user_id)
        return deleted

    def get_by_account_id(self, account_id: str) -> Optional[LinkedAccount]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_SELECT_COLUMNS} FROM linked_accounts WHERE account_id = ?",
                (account_id,),
            )
            row = cur.fetchone()
            if not row:
                return None
            return self._to_domain(row)


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None
