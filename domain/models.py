from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional


MAX_ACCOUNTS = 3

UNRANKED = "UNRANKED"

TIERS = (
    "IRON",
    "BRONZE",
    "SILVER",
    "GOLD",
    "PLATINUM",
    "EMERALD",
    "DIAMOND",
    "MASTER",
    "GRANDMASTER",
    "CHALLENGER",
    UNRANKED,
)


class Ladder(Enum):
    """
    Independent ranking categories.

    Each member carries the Riot queue type it is read from and a label used
    in user-facing messages. The TFT ladders are keyed by the secondary
    account id (the id issued under the TFT API key).
    """

    SOLOQ = ("RANKED_SOLO_5x5", "SoloQ", False)
    FLEX = ("RANKED_FLEX_SR", "Flex", False)
    TFT = ("RANKED_TFT", "TFT", True)
    DOUBLEUP = ("RANKED_TFT_DOUBLE_UP", "Double Up", True)

    def __init__(self, queue_type: str, label: str, uses_secondary_id: bool) -> None:
        self.queue_type = queue_type
        self.label = label
        self.uses_secondary_id = uses_secondary_id

    @classmethod
    def from_name(cls, name: str) -> "Ladder":
        try:
            return cls[name.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown ladder: {name!r}") from None


def canonical_tier(raw: Optional[str]) -> str:
    """Uppercase a tier string; empty values count as unranked."""

    if raw is None:
        return UNRANKED
    tier = str(raw).strip().upper()
    return tier or UNRANKED


def default_tiers() -> Dict[Ladder, str]:
    return {ladder: UNRANKED for ladder in Ladder}


@dataclass
class LinkedAccount:
    """
    A Riot account linked to a Discord user.

    `account_id` is the Riot PUUID and is globally unique: one account
    belongs to at most one user at a time.
    """

    user_id: str
    account_id: str
    display_name: str
    tag_line: str
    secondary_account_id: Optional[str] = None
    tiers: Dict[Ladder, str] = field(default_factory=default_tiers)
    last_updated: Optional[datetime] = None

    def __post_init__(self) -> None:
        tiers = default_tiers()
        for ladder, tier in self.tiers.items():
            tiers[ladder] = canonical_tier(tier)
        self.tiers = tiers

    @property
    def riot_id(self) -> str:
        return f"{self.display_name}#{self.tag_line}"

    def tier(self, ladder: Ladder) -> str:
        return self.tiers.get(ladder, UNRANKED)


@dataclass(frozen=True)
class ResolvedAccount:
    """Result of looking up a Riot ID (name + tag) upstream."""

    account_id: str
    display_name: str
    tag_line: str
    secondary_account_id: Optional[str] = None


class TierStatus(Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"
    NOT_APPLICABLE = "not_applicable"


@dataclass(frozen=True)
class TierResult:
    """
    Outcome of fetching one ladder for one account.

    - OK: `tier` holds the canonical tier (UNRANKED when never placed).
    - UNAVAILABLE: the upstream call failed this cycle; `error` says why.
    - NOT_APPLICABLE: the account has no identity for this ladder.
    """

    status: TierStatus
    tier: Optional[str] = None
    error: Optional[Exception] = None

    @classmethod
    def ok(cls, tier: Optional[str]) -> "TierResult":
        return cls(TierStatus.OK, tier=canonical_tier(tier))

    @classmethod
    def unavailable(cls, error: Optional[Exception] = None) -> "TierResult":
        return cls(TierStatus.UNAVAILABLE, error=error)

    @classmethod
    def not_applicable(cls) -> "TierResult":
        return cls(TierStatus.NOT_APPLICABLE)


@dataclass(frozen=True)
class UpsertInfo:
    """What an account upsert did."""

    created: bool


@dataclass(frozen=True)
class RoleDelta:
    added: FrozenSet[int] = frozenset()
    removed: FrozenSet[int] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed
