from __future__ import annotations


# Persistent panel buttons (posted by /setup-link).
PANEL_LINK = "panel:link"
PANEL_ACCOUNTS = "panel:accounts"
PANEL_REFRESH = "panel:refresh"

# Opens the unlink select from the accounts embed.
UNLINK_MENU = "unlink:menu"
UNLINK_SELECT = "unlink:select"

LINK_MODAL = "link:modal"

# Disabled button shown once a challenge has expired.
CONFIRM_EXPIRED = "confirm_icon_expired"

_CONFIRM_PREFIX = "confirm_icon"


def encode_confirm_icon(token: str) -> str:
    """
    Encode the "I changed my icon" button of a challenge.

    Format: confirm_icon:{token}

    Only the short challenge token is carried; the account id and expected
    icon stay with the challenge itself.
    """

    if not token or ":" in token:
        raise ValueError(f"Invalid challenge token: {token!r}")
    return f"{_CONFIRM_PREFIX}:{token}"


def parse_confirm_icon(data: str) -> str:
    parts = data.split(":")
    if len(parts) != 2 or parts[0] != _CONFIRM_PREFIX or not parts[1]:
        raise ValueError(f"Invalid confirm icon custom id: {data}")
    return parts[1]
