from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping

from domain.errors import UpstreamAuthError
from domain.models import UNRANKED, Ladder, LinkedAccount, TierResult, TierStatus
from domain.repositories import AccountRepository, RankFetcher, RoleGateway
from domain.role_bindings import RoleBindings

from application.aggregator import DesiredRoles, aggregate_desired_roles
from application.reconciler import ReconcileResult, reconcile


log = logging.getLogger(__name__)


@dataclass
class TierRefresh:
    """An account with freshly merged tiers and how complete the data is."""

    account: LinkedAccount
    stale_ladders: List[Ladder] = field(default_factory=list)
    auth_failed: bool = False

    @property
    def partial(self) -> bool:
        return bool(self.stale_ladders)


@dataclass
class RoleSyncReport:
    desired: DesiredRoles
    result: ReconcileResult


def merge_tier_results(
    account: LinkedAccount,
    results: Mapping[Ladder, TierResult],
) -> TierRefresh:
    """
    Fold per-ladder fetch results into `account`.

    - OK replaces the stored tier.
    - NOT_APPLICABLE means the account has no presence there: UNRANKED.
    - UNAVAILABLE (or missing) keeps the previously stored tier and marks
      the ladder as stale for this cycle.
    """

    tiers: Dict[Ladder, str] = dict(account.tiers)
    stale: List[Ladder] = []
    auth_failed = False

    for ladder in Ladder:
        result = results.get(ladder)
        if result is None or result.status is TierStatus.UNAVAILABLE:
            stale.append(ladder)
            if result is not None and isinstance(result.error, UpstreamAuthError):
                auth_failed = True
            continue
        if result.status is TierStatus.NOT_APPLICABLE:
            tiers[ladder] = UNRANKED
        else:
            tiers[ladder] = result.tier or UNRANKED

    return TierRefresh(
        account=replace(account, tiers=tiers),
        stale_ladders=stale,
        auth_failed=auth_failed,
    )


async def fetch_account_tiers(account: LinkedAccount, fetcher: RankFetcher) -> TierRefresh:
    results = await fetcher.fetch_tiers(account.account_id, account.secondary_account_id)
    refresh = merge_tier_results(account, results)
    if refresh.partial:
        log.warning(
            "Tiers for %s are partial this cycle (stale: %s)",
            account.riot_id,
            ", ".join(ladder.name for ladder in refresh.stale_ladders),
        )
    return refresh


async def sync_member_roles(
    user_id: str,
    account_repo: AccountRepository,
    roles: RoleGateway,
    bindings: RoleBindings,
) -> RoleSyncReport:
    """
    Re-read every linked account of `user_id` and reconcile their roles.

    Always works on the full account set, so a newly linked or removed
    account is evaluated together with the others.
    """

    accounts = await asyncio.to_thread(account_repo.list_by_user, user_id)
    desired = aggregate_desired_roles(accounts, bindings)
    result = await reconcile(user_id, desired.role_ids, bindings.managed_role_ids, roles)
    log.info(
        "Role sync for %s over %d account(s): +%d -%d (%s)",
        user_id,
        len(accounts),
        len(result.delta.added),
        len(result.delta.removed),
        result.state.value,
    )
    return RoleSyncReport(desired=desired, result=result)
