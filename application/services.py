from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from domain.errors import (
    AccountNotFound,
    StoreError,
    UpstreamAuthError,
    UpstreamError,
)
from domain.models import MAX_ACCOUNTS, Ladder, LinkedAccount
from domain.repositories import AccountDirectory, AccountRepository, RankFetcher, RoleGateway
from domain.role_bindings import RoleBindings

from application.sync import RoleSyncReport, TierRefresh, fetch_account_tiers, sync_member_roles
from application.verification import (
    ExpiryCallback,
    VerificationChallenge,
    VerificationOrchestrator,
    limit_message,
    retry_hint,
)


log = logging.getLogger(__name__)

DEFAULT_DDRAGON_VERSION = "14.9.1"

STORE_FAILURE_MESSAGE = "❌ Something went wrong while reading your linked accounts. Please try again later."
AUTH_FAILURE_MESSAGE = "❌ The bot could not authenticate with the Riot API. Please contact an administrator."
ROLE_FAILURE_MESSAGE = "⚠️ Could not update your roles. Please contact an administrator."
NO_ACCOUNTS_MESSAGE = "❌ You have no linked League of Legends accounts. Use /link first."


@dataclass
class ExternalContext:
    """
    Information about the caller from the chat platform.

    The application layer never depends on concrete SDK types; it only sees
    this small context object.
    """

    provider: str
    provider_user_id: str
    display_name: str

    @property
    def user_id(self) -> str:
        return self.provider_user_id


@dataclass
class OperationResult:
    """Generic result type for simple operations."""

    success: bool
    message: Optional[str] = None


@dataclass
class StartLinkResult(OperationResult):
    challenge: Optional[VerificationChallenge] = None
    icon_url: Optional[str] = None


@dataclass
class ViewAccountsResult(OperationResult):
    accounts: List[LinkedAccount] = field(default_factory=list)
    limit: int = MAX_ACCOUNTS


@dataclass
class RoleUpdateResult(OperationResult):
    sync: Optional[RoleSyncReport] = None
    refreshes: List[TierRefresh] = field(default_factory=list)


def profile_icon_url(icon_id: int, version: str = DEFAULT_DDRAGON_VERSION) -> str:
    return f"https://ddragon.leagueoflegends.com/cdn/{version}/img/profileicon/{icon_id}.png"


def describe_tiers(account: LinkedAccount) -> str:
    return "\n".join(f"**{ladder.label}:** {account.tier(ladder)}" for ladder in Ladder)


def _upstream_message(exc: UpstreamError) -> str:
    if isinstance(exc, AccountNotFound):
        return (
            "❌ No Riot account was found with that name and tag. "
            "Check the spelling (e.g. Faker #EUW)."
        )
    if isinstance(exc, UpstreamAuthError):
        return AUTH_FAILURE_MESSAGE
    return "❌ The Riot API is not responding right now. " + retry_hint(
        exc, "Please try again in a few minutes."
    )


async def start_link(
    external_ctx: ExternalContext,
    game_name: str,
    tag_line: str,
    account_repo: AccountRepository,
    directory: AccountDirectory,
    orchestrator: VerificationOrchestrator,
    on_expire: Optional[ExpiryCallback] = None,
    ddragon_version: str = DEFAULT_DDRAGON_VERSION,
) -> StartLinkResult:
    """
    Begin linking a Riot account:
    - Reject callers already at the account cap.
    - Resolve the Riot ID upstream.
    - Issue an icon challenge with an icon the account is not using yet.
    """

    user_id = external_ctx.user_id
    game_name = game_name.strip()
    tag_line = tag_line.strip().lstrip("#")
    if not game_name or not tag_line:
        return StartLinkResult(success=False, message="❌ Both the name and the tag are required.")

    try:
        linked = await asyncio.to_thread(account_repo.count_by_user, user_id)
    except StoreError as exc:
        log.error("Counting accounts of user %s failed: %s", user_id, exc)
        return StartLinkResult(success=False, message=STORE_FAILURE_MESSAGE)

    if linked >= MAX_ACCOUNTS:
        return StartLinkResult(success=False, message=limit_message())

    try:
        resolved = await directory.resolve_account(game_name, tag_line)
        existing = await asyncio.to_thread(account_repo.get_by_account_id, resolved.account_id)
        if existing is not None and existing.user_id == user_id:
            return StartLinkResult(
                success=False,
                message=f"ℹ️ **{existing.riot_id}** is already linked to your Discord account.",
            )
        current_icon = await directory.fetch_profile_icon(resolved.account_id)
    except UpstreamError as exc:
        if isinstance(exc, UpstreamAuthError):
            log.error("Riot API rejected our credentials during link: %s", exc)
        else:
            log.info("Link lookup for %s#%s failed: %s", game_name, tag_line, exc)
        return StartLinkResult(success=False, message=_upstream_message(exc))
    except StoreError as exc:
        log.error("Store lookup during link for user %s failed: %s", user_id, exc)
        return StartLinkResult(success=False, message=STORE_FAILURE_MESSAGE)

    icon_id = orchestrator.choose_icon(current_icon)
    challenge = orchestrator.issue(user_id, resolved, icon_id, on_expire=on_expire)
    return StartLinkResult(
        success=True,
        message=(
            "Change your summoner icon in League of Legends to the one shown, "
            "then press **Confirm**."
        ),
        challenge=challenge,
        icon_url=profile_icon_url(icon_id, ddragon_version),
    )


async def view_accounts(
    external_ctx: ExternalContext,
    account_repo: AccountRepository,
) -> ViewAccountsResult:
    try:
        accounts = await asyncio.to_thread(account_repo.list_by_user, external_ctx.user_id)
    except StoreError as exc:
        log.error("Listing accounts of user %s failed: %s", external_ctx.user_id, exc)
        return ViewAccountsResult(success=False, message=STORE_FAILURE_MESSAGE)

    if not accounts:
        return ViewAccountsResult(success=False, message=NO_ACCOUNTS_MESSAGE)
    return ViewAccountsResult(success=True, accounts=accounts)


async def unlink_account(
    external_ctx: ExternalContext,
    account_id: str,
    account_repo: AccountRepository,
    roles: RoleGateway,
    bindings: RoleBindings,
) -> RoleUpdateResult:
    """
    Remove one linked account and re-evaluate roles over the rest.

    When no account remains the desired set is empty and every managed
    role is stripped.
    """

    user_id = external_ctx.user_id
    try:
        account = await asyncio.to_thread(account_repo.get_by_account_id, account_id)
        if account is None or account.user_id != user_id:
            return RoleUpdateResult(
                success=False,
                message="❌ That account is not in your list of linked accounts.",
            )
        deleted = await asyncio.to_thread(account_repo.delete, user_id, account_id)
        if not deleted:
            return RoleUpdateResult(success=False, message="❌ That account was already unlinked.")
        sync = await sync_member_roles(user_id, account_repo, roles, bindings)
    except StoreError as exc:
        log.error("Unlinking %s for user %s failed: %s", account_id, user_id, exc)
        return RoleUpdateResult(success=False, message=STORE_FAILURE_MESSAGE)

    log.info("User %s unlinked %s", user_id, account.riot_id)

    lines = [f"✅ **{account.riot_id}** has been unlinked."]
    if not sync.desired.role_ids:
        lines.append("You have no linked accounts left, so all your rank roles were removed.")
    else:
        lines.append("Your roles now reflect: **" + ", ".join(sync.desired.labels) + "**.")
    if not sync.result.ok:
        lines.append(ROLE_FAILURE_MESSAGE)
    return RoleUpdateResult(success=True, message="\n".join(lines), sync=sync)


async def refresh_accounts(
    external_ctx: ExternalContext,
    account_repo: AccountRepository,
    fetcher: RankFetcher,
    roles: RoleGateway,
    bindings: RoleBindings,
) -> RoleUpdateResult:
    """
    Re-fetch tiers for every linked account, store them and resync roles.

    Ladders the Riot API could not answer keep their stored tier.
    """

    user_id = external_ctx.user_id
    try:
        accounts = await asyncio.to_thread(account_repo.list_by_user, user_id)
    except StoreError as exc:
        log.error("Listing accounts of user %s failed: %s", user_id, exc)
        return RoleUpdateResult(success=False, message=STORE_FAILURE_MESSAGE)

    if not accounts:
        return RoleUpdateResult(success=False, message=NO_ACCOUNTS_MESSAGE)

    refreshes = await asyncio.gather(
        *(fetch_account_tiers(account, fetcher) for account in accounts)
    )

    try:
        saved = 0
        for refresh in refreshes:
            account = refresh.account
            # Accounts unlinked while fetching stay unlinked.
            if await asyncio.to_thread(
                account_repo.update_tiers, user_id, account.account_id, account.tiers
            ):
                saved += 1
        sync = await sync_member_roles(user_id, account_repo, roles, bindings)
    except StoreError as exc:
        log.error("Saving refreshed tiers for user %s failed: %s", user_id, exc)
        return RoleUpdateResult(success=False, message=STORE_FAILURE_MESSAGE, refreshes=list(refreshes))

    if not saved:
        lines = [NO_ACCOUNTS_MESSAGE]
        if not sync.result.ok:
            lines.append(ROLE_FAILURE_MESSAGE)
        return RoleUpdateResult(
            success=False,
            message="\n".join(lines),
            sync=sync,
            refreshes=list(refreshes),
        )

    lines = ["✅ Rank roles updated: **" + ", ".join(sync.desired.labels) + "**."]
    if any(refresh.auth_failed for refresh in refreshes):
        lines.append(AUTH_FAILURE_MESSAGE)
    elif any(refresh.partial for refresh in refreshes):
        lines.append(
            "⚠️ Some ranks could not be fetched from Riot Games; "
            "the last known values were used and may be out of date."
        )
    if not sync.result.ok:
        lines.append(ROLE_FAILURE_MESSAGE)
    return RoleUpdateResult(
        success=True,
        message="\n".join(lines),
        sync=sync,
        refreshes=list(refreshes),
    )
