from __future__ import annotations

from typing import Iterable, Optional


class RankBotError(Exception):
    """Base class for every error the bot knows how to report."""


class ConfigError(RankBotError):
    """Invalid or missing configuration detected at startup."""


class LimitExceeded(RankBotError):
    def __init__(self, user_id: str, limit: int) -> None:
        super().__init__(f"User {user_id} already has {limit} linked accounts")
        self.user_id = user_id
        self.limit = limit


class StoreError(RankBotError):
    """The persistence layer failed."""


class AccountNotFound(RankBotError):
    """No linked account matches the requested identity."""


class UpstreamError(RankBotError):
    """Base class for failures of the Riot API."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class UpstreamNotFound(UpstreamError, AccountNotFound):
    """The Riot ID (or account id) does not resolve upstream."""


class UpstreamAuthError(UpstreamError):
    """Our Riot API credentials are invalid or expired."""


class UpstreamTransient(UpstreamError):
    """Rate limit, timeout or server-side failure; worth retrying later."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, status)
        self.retry_after = retry_after


class MemberNotFound(RankBotError):
    """The Discord member is not (or no longer) in the guild."""


class RoleMutationError(RankBotError):
    """A batched role add/remove call was refused or failed."""

    def __init__(self, message: str, member_id: str, role_ids: Iterable[int] = ()) -> None:
        super().__init__(message)
        self.member_id = member_id
        self.role_ids = frozenset(role_ids)


class InsufficientPermission(RoleMutationError):
    """The bot may not manage one or more of the target roles."""
