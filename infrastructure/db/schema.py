from __future__ import annotations

from domain.models import Ladder


# One tier column per ladder, e.g. `tier_soloq`.
TIER_COLUMNS = {ladder: f"tier_{ladder.name.lower()}" for ladder in Ladder}

ACCOUNT_COLUMNS = [
    "user_id",
    "account_id",
    "secondary_account_id",
    "display_name",
    "tag_line",
] + [TIER_COLUMNS[ladder] for ladder in Ladder]
