from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol

from .models import Ladder, LinkedAccount, ResolvedAccount, TierResult, UpsertInfo


class AccountRepository(Protocol):
    """
    Abstraction over linked-account persistence.

    Implementations are responsible for:
    - Keying rows by `account_id` (one owner per Riot account).
    - Enforcing `MAX_ACCOUNTS` per user before writing.
    - Hiding any SQL / driver details from the application layer; driver
      failures surface as `StoreError`.
    """

    def upsert(self, account: LinkedAccount) -> UpsertInfo:
        """
        Insert or update `account` keyed by `account_id`.

        Raises `LimitExceeded` without writing when the account is new to
        the user and the user already owns `MAX_ACCOUNTS` accounts.
        """

        ...

    def update_tiers(self, user_id: str, account_id: str, tiers: Mapping[Ladder, str]) -> bool:
        """
        Overwrite the stored tiers of an account `user_id` still owns.

        Never inserts: returns False when the account was unlinked or moved
        to another user in the meantime.
        """

        ...

    def list_by_user(self, user_id: str) -> List[LinkedAccount]:
        """Return every account linked to `user_id`, oldest first."""

        ...

    def count_by_user(self, user_id: str) -> int:
        ...

    def delete(self, user_id: str, account_id: str) -> bool:
        """Return True iff a row matching both ids was removed."""

        ...

    def get_by_account_id(self, account_id: str) -> Optional[LinkedAccount]:
        ...


class RankFetcher(Protocol):
    """
    Reads current tiers from the ranking API.

    Never raises for upstream failures: each ladder gets its own
    `TierResult` so one failing queue cannot hide the others.
    """

    async def fetch_tiers(
        self,
        account_id: str,
        secondary_account_id: Optional[str] = None,
    ) -> Dict[Ladder, TierResult]:
        ...


class AccountDirectory(Protocol):
    """Looks up Riot identities and their public profile."""

    async def resolve_account(self, game_name: str, tag_line: str) -> ResolvedAccount:
        """Raises `UpstreamNotFound`, `UpstreamAuthError` or `UpstreamTransient`."""

        ...

    async def fetch_profile_icon(self, account_id: str) -> int:
        ...


class RoleGateway(Protocol):
    """
    Role-mutation collaborator for one guild.

    Mutations take whole batches so that one call is made per direction,
    whatever the number of roles.
    """

    async def get_current_roles(self, member_id: str) -> FrozenSet[int]:
        """Fresh read of the member's roles; raises `MemberNotFound`."""

        ...

    async def add_roles(self, member_id: str, role_ids: Iterable[int]) -> None:
        """Raises `RoleMutationError` (or `InsufficientPermission`)."""

        ...

    async def remove_roles(self, member_id: str, role_ids: Iterable[int]) -> None:
        ...
