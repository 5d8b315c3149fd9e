from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AbstractSet, FrozenSet, List

from domain.errors import (
    InsufficientPermission,
    MemberNotFound,
    RankBotError,
    RoleMutationError,
)
from domain.models import RoleDelta
from domain.repositories import RoleGateway


log = logging.getLogger(__name__)


class ReconcileState(Enum):
    DONE = "done"
    PARTIAL = "partial"
    # The first membership read failed, nothing was attempted.
    ABORTED = "aborted"


@dataclass
class ReconcileResult:
    """
    What a reconciliation run attempted.

    `delta` lists the roles we tried to add/remove; when `state` is
    PARTIAL, `errors` says which batch failed, so `delta` may be larger
    than what the platform actually applied.
    """

    delta: RoleDelta
    state: ReconcileState
    errors: List[RankBotError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is ReconcileState.DONE

    @property
    def permission_denied(self) -> bool:
        return any(isinstance(err, InsufficientPermission) for err in self.errors)


async def reconcile(
    member_id: str,
    desired: AbstractSet[int],
    managed: AbstractSet[int],
    gateway: RoleGateway,
) -> ReconcileResult:
    """
    Make the member's managed roles equal `desired`.

    Removals are applied before additions, each as one batched call, and
    membership is re-read between the two so the add set is computed
    against the post-removal state. A failing batch never prevents the
    other one from running, and no exception escapes: failures are
    returned in the result.

    An empty `desired` set strips every managed role the member holds.
    """

    desired = frozenset(desired)
    managed = frozenset(managed)
    errors: List[RankBotError] = []

    try:
        current = await gateway.get_current_roles(member_id)
    except (MemberNotFound, RoleMutationError) as exc:
        log.warning("Cannot read roles of member %s: %s", member_id, exc)
        return ReconcileResult(RoleDelta(), ReconcileState.ABORTED, [exc])

    to_remove = (current & managed) - desired
    if to_remove:
        try:
            await gateway.remove_roles(member_id, to_remove)
            log.info("Removed roles %s from member %s", sorted(to_remove), member_id)
        except RoleMutationError as exc:
            log.error(
                "Removing roles %s from member %s failed: %s",
                sorted(to_remove),
                member_id,
                exc,
            )
            errors.append(exc)

        current = await _refetch(member_id, gateway, current - to_remove)

    to_add = desired - current
    if to_add:
        try:
            await gateway.add_roles(member_id, to_add)
            log.info("Added roles %s to member %s", sorted(to_add), member_id)
        except RoleMutationError as exc:
            log.error(
                "Adding roles %s to member %s failed: %s",
                sorted(to_add),
                member_id,
                exc,
            )
            errors.append(exc)

    if not to_add and not to_remove:
        log.debug("No role changes needed for member %s", member_id)

    state = ReconcileState.PARTIAL if errors else ReconcileState.DONE
    return ReconcileResult(RoleDelta(added=to_add, removed=to_remove), state, errors)


async def _refetch(
    member_id: str,
    gateway: RoleGateway,
    fallback: FrozenSet[int],
) -> FrozenSet[int]:
    try:
        return await gateway.get_current_roles(member_id)
    except (MemberNotFound, RoleMutationError) as exc:
        # Assume the removal landed; the next run corrects any drift.
        log.warning("Re-reading roles of member %s failed: %s", member_id, exc)
        return fallback
