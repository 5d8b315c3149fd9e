from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, List, Mapping, Optional

import psycopg2

from domain.errors import LimitExceeded, StoreError
from domain.models import MAX_ACCOUNTS, UNRANKED, Ladder, LinkedAccount, UpsertInfo, canonical_tier
from domain.repositories import AccountRepository

from infrastructure.db.schema import ACCOUNT_COLUMNS as _COLUMNS, TIER_COLUMNS


log = logging.getLogger(__name__)


class PostgresAccountRepository(AccountRepository):
    """
    Postgres-backed implementation of `AccountRepository`.

    Same schema and semantics as the SQLite repository. The cap check and
    the write run in one transaction, with the user's rows locked
    (`FOR UPDATE`), which narrows but does not close the race between two
    links of *different* accounts by the same user.
    """

    def __init__(self, db_params: dict) -> None:
        self._db_params = db_params
        self._ensure_table()

    def _get_connection(self):
        return psycopg2.connect(**self._db_params)

    @contextmanager
    def _cursor(self) -> Iterator["psycopg2.extensions.cursor"]:
        try:
            conn = self._get_connection()
        except psycopg2.Error as exc:
            raise StoreError(f"Cannot connect to Postgres: {exc}") from exc
        try:
            with conn:
                with conn.cursor() as cur:
                    yield cur
        except psycopg2.Error as exc:
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
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    last_updated TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_linked_accounts_user ON linked_accounts (user_id)"
            )
            for ladder in Ladder:
                cur.execute(
                    f"ALTER TABLE linked_accounts ADD COLUMN IF NOT EXISTS {TIER_COLUMNS[ladder]} "
                    f"TEXT NOT NULL DEFAULT '{UNRANKED}'"
                )

    @staticmethod
    def _to_domain(row: tuple) -> LinkedAccount:
        tiers = {ladder: row[5 + index] for index, ladder in enumerate(Ladder)}
        return LinkedAccount(
            user_id=str(row[0]),
            account_id=row[1],
            secondary_account_id=row[2],
            display_name=row[3],
            tag_line=row[4],
            tiers=tiers,
            last_updated=row[5 + len(TIER_COLUMNS)],
        )

    def upsert(self, account: LinkedAccount) -> UpsertInfo:
        updates = ", ".join(
            f"{column} = EXCLUDED.{column}" for column in _COLUMNS if column != "account_id"
        )
        with self._cursor() as cur:
            cur.execute(
                "SELECT account_id FROM linked_accounts WHERE user_id = %s FOR UPDATE",
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

            # xmax = 0 only for freshly inserted rows.
            cur.execute(
                f"""
                INSERT INTO linked_accounts ({", ".join(_COLUMNS)})
                VALUES ({", ".join("%s" for _ in _COLUMNS)})
                ON CONFLICT (account_id) DO UPDATE SET {updates}, last_updated = NOW()
                RETURNING (xmax = 0)
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
            created = bool(cur.fetchone()[0])

        log.info(
            "%s account %s for user %s",
            "Linked" if created else "Updated",
            account.account_id,
            account.user_id,
        )
        return UpsertInfo(created=created)

    def update_tiers(self, user_id: str, account_id: str, tiers: Mapping[Ladder, str]) -> bool:
        assignments = ", ".join(f"{TIER_COLUMNS[ladder]} = %s" for ladder in Ladder)
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE linked_accounts
                SET {assignments}, last_updated = NOW()
                WHERE user_id = %s AND account_id = %s
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
                f"""
                SELECT {", ".join(_COLUMNS)}, last_updated
                FROM linked_accounts
                WHERE user_id = %s
                ORDER BY created_at
                """,
                (user_id,),
            )
            return [self._to_domain(row) for row in cur.fetchall()]

    def count_by_user(self, user_id: str) -> int:
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM linked_accounts WHERE user_id = %s", (user_id,))
            return int(cur.fetchone()[0])

    def delete(self, user_id: str, account_id: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM linked_accounts WHERE user_id = %s AND account_id = %s",
                (user_id, account_id),
            )
            deleted = cur.rowcount == 1

        if not deleted:
            log.warning("No account %s found for user %s to delete", account_id, user_id)
        return deleted

    def get_by_account_id(self, account_id: str) -> Optional[LinkedAccount]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {', '.join(_COLUMNS)}, last_updated FROM linked_accounts WHERE account_id = %s",
                (account_id,),
            )
            row = cur.fetchone()
            if not row:
                return None
            return self._to_domain(row)
