from __future__ import annotations

import asyncio
import logging
import math
import random
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Set

from domain.errors import (
    LimitExceeded,
    StoreError,
    UpstreamAuthError,
    UpstreamError,
    UpstreamTransient,
)
from domain.models import MAX_ACCOUNTS, LinkedAccount, ResolvedAccount
from domain.repositories import AccountDirectory, AccountRepository, RankFetcher, RoleGateway
from domain.role_bindings import RoleBindings

from application.sync import RoleSyncReport, fetch_account_tiers, sync_member_roles


log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5 * 60

# Profile icons every account owns.
STARTER_ICON_IDS = range(1, 29)


class ChallengeState(Enum):
    ISSUED = "issued"
    VERIFYING = "verifying"
    LINKED = "linked"
    EXPIRED = "expired"
    FAILED = "failed"


class ConfirmOutcome(Enum):
    LINKED = "linked"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    NOT_OWNER = "not_owner"
    BUSY = "busy"
    UPSTREAM_ERROR = "upstream_error"
    LIMIT_EXCEEDED = "limit_exceeded"
    STORE_ERROR = "store_error"


@dataclass
class VerificationChallenge:
    """
    One pending "set this icon" handshake.

    Scoped to a single (user, account, expected icon) triple; a user may
    hold several at once, the account cap is enforced when one succeeds.
    """

    token: str
    user_id: str
    account: ResolvedAccount
    expected_icon_id: int
    state: ChallengeState = ChallengeState.ISSUED
    expiry_pending: bool = False

    @property
    def is_open(self) -> bool:
        return self.state in (ChallengeState.ISSUED, ChallengeState.VERIFYING)


@dataclass
class ConfirmResult:
    outcome: ConfirmOutcome
    challenge: Optional[VerificationChallenge] = None
    account: Optional[LinkedAccount] = None
    sync: Optional[RoleSyncReport] = None
    observed_icon_id: Optional[int] = None
    partial_tiers: bool = False
    error: Optional[Exception] = None

    @property
    def terminal(self) -> bool:
        return self.outcome not in (
            ConfirmOutcome.MISMATCH,
            ConfirmOutcome.BUSY,
            ConfirmOutcome.NOT_OWNER,
            ConfirmOutcome.UPSTREAM_ERROR,
        )

    @property
    def message(self) -> str:
        return _confirm_message(self)


ExpiryCallback = Callable[[VerificationChallenge], Awaitable[None]]


class VerificationOrchestrator:
    """
    Drives icon-verification challenges.

    Each challenge owns a cancellable timer (`loop.call_later`). It ends as
    LINKED or FAILED from `confirm`, or EXPIRED from the timer, whichever
    comes first. Nothing is written to the store or to roles before a match, so
    expiry needs no rollback.
    """

    def __init__(
        self,
        account_repo: AccountRepository,
        directory: AccountDirectory,
        fetcher: RankFetcher,
        bindings: RoleBindings,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._account_repo = account_repo
        self._directory = directory
        self._fetcher = fetcher
        self._bindings = bindings
        self._timeout = timeout
        self._rng = rng or random.SystemRandom()

        self._pending: Dict[str, VerificationChallenge] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._on_expire: Dict[str, Optional[ExpiryCallback]] = {}
        self._callback_tasks: Set[asyncio.Task] = set()

    @property
    def timeout(self) -> float:
        return self._timeout

    def get(self, token: str) -> Optional[VerificationChallenge]:
        return self._pending.get(token)

    def choose_icon(self, current_icon_id: Optional[int] = None) -> int:
        """Pick a starter icon different from the one currently in use."""

        candidates = [icon for icon in STARTER_ICON_IDS if icon != current_icon_id]
        return self._rng.choice(candidates)

    def issue(
        self,
        user_id: str,
        account: ResolvedAccount,
        expected_icon_id: int,
        on_expire: Optional[ExpiryCallback] = None,
    ) -> VerificationChallenge:
        loop = asyncio.get_running_loop()
        token = secrets.token_hex(8)
        challenge = VerificationChallenge(
            token=token,
            user_id=user_id,
            account=account,
            expected_icon_id=expected_icon_id,
        )

        self._pending[token] = challenge
        self._on_expire[token] = on_expire
        self._timers[token] = loop.call_later(self._timeout, self._expire, token)

        log.info(
            "Issued challenge %s for user %s -> %s (icon %d)",
            token,
            user_id,
            f"{account.display_name}#{account.tag_line}",
            expected_icon_id,
        )
        return challenge

    async def confirm(self, token: str, user_id: str, roles: RoleGateway) -> ConfirmResult:
        challenge = self._pending.get(token)
        if challenge is None or not challenge.is_open:
            return ConfirmResult(ConfirmOutcome.EXPIRED, challenge)
        if challenge.user_id != user_id:
            return ConfirmResult(ConfirmOutcome.NOT_OWNER, challenge)
        if challenge.state is ChallengeState.VERIFYING:
            return ConfirmResult(ConfirmOutcome.BUSY, challenge)

        challenge.state = ChallengeState.VERIFYING
        resolved = challenge.account

        try:
            icon_id = await self._directory.fetch_profile_icon(resolved.account_id)
        except UpstreamError as exc:
            _log_upstream_error(exc, "reading the profile icon of", resolved.account_id)
            return self._back_to_issued(challenge, ConfirmOutcome.UPSTREAM_ERROR, error=exc)
        except Exception as exc:
            log.exception("Unexpected failure reading the profile icon of %s", resolved.account_id)
            return self._back_to_issued(challenge, ConfirmOutcome.UPSTREAM_ERROR, error=exc)

        if icon_id != challenge.expected_icon_id:
            log.info(
                "Challenge %s: icon %s does not match expected %d",
                token,
                icon_id,
                challenge.expected_icon_id,
            )
            return self._back_to_issued(challenge, ConfirmOutcome.MISMATCH, observed=icon_id)

        # Matched: the deadline no longer applies.
        self._cancel_timer(token)
        try:
            return await self._link(challenge, icon_id, roles)
        except Exception:
            # No timer is left to close the challenge.
            self._finish(token, ChallengeState.FAILED)
            raise

    async def _link(
        self,
        challenge: VerificationChallenge,
        icon_id: int,
        roles: RoleGateway,
    ) -> ConfirmResult:
        token = challenge.token
        user_id = challenge.user_id
        resolved = challenge.account
        fresh = LinkedAccount(
            user_id=user_id,
            account_id=resolved.account_id,
            secondary_account_id=resolved.secondary_account_id,
            display_name=resolved.display_name,
            tag_line=resolved.tag_line,
        )
        refresh = await fetch_account_tiers(fresh, self._fetcher)

        # Store write happens before any role change.
        try:
            await asyncio.to_thread(self._account_repo.upsert, refresh.account)
        except LimitExceeded as exc:
            self._finish(token, ChallengeState.FAILED)
            return ConfirmResult(ConfirmOutcome.LIMIT_EXCEEDED, challenge, error=exc)
        except StoreError as exc:
            log.error("Storing account %s for user %s failed: %s", resolved.account_id, user_id, exc)
            self._finish(token, ChallengeState.FAILED)
            return ConfirmResult(ConfirmOutcome.STORE_ERROR, challenge, error=exc)

        result = ConfirmResult(
            ConfirmOutcome.LINKED,
            challenge,
            account=refresh.account,
            observed_icon_id=icon_id,
            partial_tiers=refresh.partial,
        )
        try:
            result.sync = await sync_member_roles(user_id, self._account_repo, roles, self._bindings)
        except StoreError as exc:
            log.error("Re-reading accounts of user %s failed after linking: %s", user_id, exc)
            result.error = exc

        self._finish(token, ChallengeState.LINKED)
        log.info("Linked %s to user %s", refresh.account.riot_id, user_id)
        return result

    def cancel_all(self) -> None:
        """Drop every pending challenge without firing expiry callbacks."""

        for token in list(self._pending):
            self._finish(token, ChallengeState.EXPIRED)

    def _back_to_issued(
        self,
        challenge: VerificationChallenge,
        outcome: ConfirmOutcome,
        observed: Optional[int] = None,
        error: Optional[Exception] = None,
    ) -> ConfirmResult:
        challenge.state = ChallengeState.ISSUED
        if challenge.expiry_pending:
            self._expire(challenge.token)
            return ConfirmResult(ConfirmOutcome.EXPIRED, challenge, observed_icon_id=observed)
        return ConfirmResult(outcome, challenge, observed_icon_id=observed, error=error)

    def _expire(self, token: str) -> None:
        challenge = self._pending.get(token)
        if challenge is None:
            return
        if challenge.state is ChallengeState.VERIFYING:
            # Let the in-flight check finish; it expires the challenge on mismatch.
            challenge.expiry_pending = True
            return

        callback = self._on_expire.get(token)
        self._finish(token, ChallengeState.EXPIRED)
        log.info("Challenge %s for user %s expired", token, challenge.user_id)

        if callback is not None:
            task = asyncio.ensure_future(callback(challenge))
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Expiry callback failed", exc_info=task.exception())

    def _cancel_timer(self, token: str) -> None:
        timer = self._timers.pop(token, None)
        if timer is not None:
            timer.cancel()

    def _finish(self, token: str, state: ChallengeState) -> None:
        self._cancel_timer(token)
        challenge = self._pending.pop(token, None)
        self._on_expire.pop(token, None)
        if challenge is not None:
            challenge.state = state


def _log_upstream_error(exc: UpstreamError, action: str, account_id: str) -> None:
    if isinstance(exc, UpstreamAuthError):
        log.error("Riot API rejected our credentials while %s %s: %s", action, account_id, exc)
    else:
        log.warning("Riot API failed while %s %s: %s", action, account_id, exc)


def _confirm_message(result: ConfirmResult) -> str:
    outcome = result.outcome
    if outcome is ConfirmOutcome.MISMATCH:
        return (
            "❌ Wrong icon! Make sure you changed your profile icon in League of Legends "
            "to the one shown, then press Confirm again."
        )
    if outcome is ConfirmOutcome.EXPIRED:
        return "⏰ This verification has expired. Use /link again to link your account."
    if outcome is ConfirmOutcome.NOT_OWNER:
        return "❌ This verification belongs to someone else."
    if outcome is ConfirmOutcome.BUSY:
        return "⏳ Your icon is already being checked, please wait."
    if outcome is ConfirmOutcome.UPSTREAM_ERROR:
        if isinstance(result.error, UpstreamAuthError):
            return "❌ The bot could not authenticate with the Riot API. Please contact an administrator."
        return "❌ Could not check your icon with Riot Games right now. " + retry_hint(
            result.error, "Please try again in a moment."
        )
    if outcome is ConfirmOutcome.LIMIT_EXCEEDED:
        return limit_message()
    if outcome is ConfirmOutcome.STORE_ERROR:
        return "❌ Your account could not be saved. Please try again later."

    account = result.account
    lines = [f"✅ Icon verified. Your account **{account.riot_id}** is now linked."]
    sync = result.sync
    if sync is None:
        lines.append("⚠️ Your roles could not be updated right now. Use /refresh later.")
    else:
        if sync.desired.labels:
            lines.append(
                "Ranks across all your accounts: **" + ", ".join(sync.desired.labels) + "**."
            )
        if not sync.result.ok:
            lines.append("⚠️ Could not update your roles. Please contact an administrator.")
    if result.partial_tiers:
        lines.append(
            "⚠️ Some ranks could not be fetched from Riot Games and may be missing. "
            "Use /refresh to update them later."
        )
    return "\n".join(lines)


def retry_hint(exc: Optional[Exception], default: str) -> str:
    """Use the rate limit `Retry-After` when Riot sent one."""

    if isinstance(exc, UpstreamTransient) and exc.retry_after:
        return f"Please try again in {math.ceil(exc.retry_after)} seconds."
    return default


def limit_message() -> str:
    return (
        f"❌ You already have the maximum of **{MAX_ACCOUNTS}** linked accounts. "
        "Unlink one before linking a new one."
    )
