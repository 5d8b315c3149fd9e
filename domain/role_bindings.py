from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional

from domain.errors import ConfigError
from domain.models import UNRANKED, Ladder, canonical_tier


log = logging.getLogger(__name__)


# Role ids of the reference server, one role per (ladder, tier).
DEFAULT_ROLE_BINDINGS: Dict[str, Dict[str, int]] = {
    "SOLOQ": {
        "IRON": 1370029647005352018,
        "BRONZE": 1370029647005352022,
        "SILVER": 1370029647034581032,
        "GOLD": 1370029647034581036,
        "PLATINUM": 1370029647034581040,
        "EMERALD": 1370029647101952132,
        "DIAMOND": 1370029647101952136,
        "MASTER": 1370029647126986803,
        "GRANDMASTER": 1370029647126986807,
        "CHALLENGER": 1370029647126986811,
        "UNRANKED": 1370029646976122898,
    },
    "FLEX": {
        "IRON": 1370029647005352017,
        "BRONZE": 1370029647005352021,
        "SILVER": 1370029647005352025,
        "GOLD": 1370029647034581035,
        "PLATINUM": 1370029647034581039,
        "EMERALD": 1370029647101952131,
        "DIAMOND": 1370029647101952135,
        "MASTER": 1370029647101952139,
        "GRANDMASTER": 1370029647126986806,
        "CHALLENGER": 1370029647126986810,
        "UNRANKED": 1370029646976122897,
    },
    "TFT": {
        "IRON": 1370029647005352016,
        "BRONZE": 1370029647005352020,
        "SILVER": 1370029647005352024,
        "GOLD": 1370029647034581034,
        "PLATINUM": 1370029647034581038,
        "EMERALD": 1370029647101952130,
        "DIAMOND": 1370029647101952134,
        "MASTER": 1370029647101952138,
        "GRANDMASTER": 1370029647126986805,
        "CHALLENGER": 1370029647126986809,
        "UNRANKED": 1370029646976122896,
    },
    "DOUBLEUP": {
        "IRON": 1370029646976122899,
        "BRONZE": 1370029647005352019,
        "SILVER": 1370029647005352023,
        "GOLD": 1370029647034581033,
        "PLATINUM": 1370029647034581037,
        "EMERALD": 1370029647034581041,
        "DIAMOND": 1370029647101952133,
        "MASTER": 1370029647101952137,
        "GRANDMASTER": 1370029647126986804,
        "CHALLENGER": 1370029647126986808,
        "UNRANKED": 1370029646976122895,
    },
}


class RoleBindings:
    """
    Immutable mapping from (ladder, tier) to a Discord role id.

    Built once at startup and passed explicitly to whoever needs it. The
    set of every role id it contains is the managed role universe: the only
    roles the reconciler may add or remove.
    """

    def __init__(self, bindings: Mapping[Ladder, Mapping[str, int]]) -> None:
        frozen: Dict[Ladder, Mapping[str, int]] = {}
        for ladder, tiers in bindings.items():
            frozen[ladder] = MappingProxyType(
                {canonical_tier(tier): int(role_id) for tier, role_id in tiers.items()}
            )
        self._bindings = MappingProxyType(frozen)
        self._managed = frozenset(
            role_id for tiers in self._bindings.values() for role_id in tiers.values()
        )

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "RoleBindings":
        """
        Build bindings from a `{"LADDER": {"TIER": role_id}}` document.

        Role ids may be given as ints or numeric strings.
        """

        if not isinstance(raw, Mapping):
            raise ConfigError("Role bindings must be a mapping of ladder -> tiers")

        bindings: Dict[Ladder, Dict[str, int]] = {}
        for ladder_name, tiers in raw.items():
            try:
                ladder = Ladder.from_name(ladder_name)
            except ValueError as exc:
                raise ConfigError(str(exc)) from exc
            if not isinstance(tiers, Mapping):
                raise ConfigError(f"Tiers for ladder {ladder_name} must be a mapping")

            bindings[ladder] = {}
            for tier, role_id in tiers.items():
                try:
                    bindings[ladder][canonical_tier(tier)] = int(role_id)
                except (TypeError, ValueError):
                    raise ConfigError(
                        f"Role id for {ladder_name}/{tier} is not a number: {role_id!r}"
                    ) from None
        return cls(bindings)

    @classmethod
    def default(cls) -> "RoleBindings":
        return cls.from_dict(DEFAULT_ROLE_BINDINGS)

    def role_for(self, ladder: Ladder, tier: str) -> Optional[int]:
        tiers = self._bindings.get(ladder)
        if tiers is None:
            return None
        return tiers.get(canonical_tier(tier))

    def fallback_for(self, ladder: Ladder) -> Optional[int]:
        return self.role_for(ladder, UNRANKED)

    @property
    def managed_role_ids(self) -> FrozenSet[int]:
        return self._managed

    def ladders(self):
        return list(self._bindings.keys())

    def warn_missing_fallbacks(self) -> None:
        for ladder in Ladder:
            if self.fallback_for(ladder) is None:
                log.warning(
                    "No UNRANKED role bound for ladder %s; unmapped tiers there grant no role.",
                    ladder.name,
                )
