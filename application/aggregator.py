from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Set, Tuple

from domain.models import UNRANKED, Ladder, LinkedAccount, canonical_tier
from domain.role_bindings import RoleBindings


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DesiredRoles:
    """
    The role set a member should hold, derived from all linked accounts.

    `labels` are "TIER (Ladder)" strings for user-facing messages, one per
    account and ladder. `unmapped` lists (ladder, tier) pairs that had no
    binding and fell back to the ladder's UNRANKED role.
    """

    role_ids: FrozenSet[int] = frozenset()
    labels: List[str] = field(default_factory=list)
    unmapped: List[Tuple[Ladder, str]] = field(default_factory=list)


def aggregate_desired_roles(
    accounts: Iterable[LinkedAccount],
    bindings: RoleBindings,
) -> DesiredRoles:
    """
    Compute the union of roles over every account and every ladder.

    Accounts are not collapsed to a "best" rank: a user with GOLD on one
    account and PLATINUM on another holds both roles. Only the final role
    id set is deduplicated.
    """

    role_ids: Set[int] = set()
    labels: List[str] = []
    unmapped: List[Tuple[Ladder, str]] = []

    for account in accounts:
        for ladder in Ladder:
            tier = canonical_tier(account.tier(ladder))
            role_id = bindings.role_for(ladder, tier)

            if role_id is None:
                if tier != UNRANKED:
                    # Configuration gap, not a user error.
                    log.warning(
                        "No role bound for %s/%s (account %s); using the UNRANKED role.",
                        ladder.name,
                        tier,
                        account.account_id,
                    )
                    unmapped.append((ladder, tier))
                tier = UNRANKED
                role_id = bindings.fallback_for(ladder)

            if role_id is None:
                log.warning("Ladder %s has no UNRANKED role; it contributes nothing.", ladder.name)
                continue

            role_ids.add(role_id)
            labels.append(f"{tier} ({ladder.label})")

    return DesiredRoles(role_ids=frozenset(role_ids), labels=labels, unmapped=unmapped)
