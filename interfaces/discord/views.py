from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional

import discord

from domain.models import Ladder, LinkedAccount

from interfaces.discord import custom_ids


log = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "❌ Something went wrong while processing your request. Please try again."

InteractionHandler = Callable[[discord.Interaction], Awaitable[None]]
LinkHandler = Callable[[discord.Interaction, str, str], Awaitable[None]]
TokenHandler = Callable[[discord.Interaction, str], Awaitable[None]]


async def send_ephemeral(interaction: discord.Interaction, content: str, **kwargs) -> None:
    """Reply or follow up, depending on whether the interaction was answered."""

    if interaction.response.is_done():
        await interaction.followup.send(content, ephemeral=True, **kwargs)
    else:
        await interaction.response.send_message(content, ephemeral=True, **kwargs)


async def report_interaction_error(interaction: discord.Interaction, error: Exception) -> None:
    data = interaction.data or {}
    log.error(
        "Interaction %s from user %s failed",
        data.get("custom_id") or data.get("name") or interaction.type,
        interaction.user.id,
        exc_info=error,
    )
    try:
        await send_ephemeral(interaction, GENERIC_ERROR_MESSAGE)
    except discord.HTTPException as exc:
        log.warning("Could not report the failure to user %s: %s", interaction.user.id, exc)


class _ReportingView(discord.ui.View):
    async def on_error(
        self,
        interaction: discord.Interaction,
        error: Exception,
        item: discord.ui.Item,
    ) -> None:
        await report_interaction_error(interaction, error)


class LinkModal(discord.ui.Modal, title="Link your League of Legends account"):
    game_name = discord.ui.TextInput(
        label="Riot name",
        placeholder="e.g. Faker",
        required=True,
        max_length=32,
    )
    tag_line = discord.ui.TextInput(
        label="Tag (without #)",
        placeholder="e.g. EUW",
        required=True,
        max_length=8,
    )

    def __init__(self, on_link: LinkHandler) -> None:
        super().__init__(custom_id=custom_ids.LINK_MODAL)
        self._on_link = on_link

    async def on_submit(self, interaction: discord.Interaction) -> None:
        await self._on_link(interaction, str(self.game_name.value), str(self.tag_line.value))

    async def on_error(self, interaction: discord.Interaction, error: Exception) -> None:
        await report_interaction_error(interaction, error)


class PanelView(_ReportingView):
    """
    Buttons of the public link panel.

    Persistent: registered with `bot.add_view` at startup so the buttons keep
    working across restarts.
    """

    def __init__(
        self,
        on_link: InteractionHandler,
        on_accounts: InteractionHandler,
        on_refresh: InteractionHandler,
    ) -> None:
        super().__init__(timeout=None)
        self._on_link = on_link
        self._on_accounts = on_accounts
        self._on_refresh = on_refresh

    @discord.ui.button(
        label="🔗 Link account",
        style=discord.ButtonStyle.primary,
        custom_id=custom_ids.PANEL_LINK,
    )
    async def link(self, interaction: discord.Interaction, button: discord.ui.Button) -> None:
        await self._on_link(interaction)

    @discord.ui.button(
        label="View accounts",
        style=discord.ButtonStyle.secondary,
        custom_id=custom_ids.PANEL_ACCOUNTS,
    )
    async def accounts(self, interaction: discord.Interaction, button: discord.ui.Button) -> None:
        await self._on_accounts(interaction)

    @discord.ui.button(
        label="🔄 Refresh ranks",
        style=discord.ButtonStyle.success,
        custom_id=custom_ids.PANEL_REFRESH,
    )
    async def refresh(self, interaction: discord.Interaction, button: discord.ui.Button) -> None:
        await self._on_refresh(interaction)


class ChallengeView(_ReportingView):
    """The confirm button of one icon challenge."""

    def __init__(self, token: str, on_confirm: TokenHandler, timeout: Optional[float] = None) -> None:
        super().__init__(timeout=timeout)
        self._on_confirm = on_confirm

        button = discord.ui.Button(
            label="✅ I changed my icon",
            style=discord.ButtonStyle.primary,
            custom_id=custom_ids.encode_confirm_icon(token),
        )
        button.callback = self._confirm
        self.add_item(button)

    async def _confirm(self, interaction: discord.Interaction) -> None:
        token = custom_ids.parse_confirm_icon(interaction.data["custom_id"])
        await self._on_confirm(interaction, token)


def expired_challenge_view() -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(
        discord.ui.Button(
            label="❌ Time expired",
            style=discord.ButtonStyle.danger,
            custom_id=custom_ids.CONFIRM_EXPIRED,
            disabled=True,
        )
    )
    return view


class AccountsView(_ReportingView):
    def __init__(self, on_unlink: InteractionHandler) -> None:
        super().__init__(timeout=10 * 60)
        self._on_unlink = on_unlink

    @discord.ui.button(
        label="🗑️ Unlink account",
        style=discord.ButtonStyle.danger,
        custom_id=custom_ids.UNLINK_MENU,
    )
    async def unlink(self, interaction: discord.Interaction, button: discord.ui.Button) -> None:
        await self._on_unlink(interaction)


def _option_label(account: LinkedAccount) -> str:
    ranks = ", ".join(f"{ladder.label}: {account.tier(ladder)}" for ladder in Ladder)
    # Select option labels are capped at 100 characters.
    return f"{account.riot_id} ({ranks})"[:100]


class UnlinkView(_ReportingView):
    def __init__(self, accounts: List[LinkedAccount], on_select: TokenHandler) -> None:
        super().__init__(timeout=10 * 60)
        self._on_select = on_select

        select = discord.ui.Select(
            custom_id=custom_ids.UNLINK_SELECT,
            placeholder="Choose an account to unlink...",
            min_values=1,
            max_values=1,
            options=[
                discord.SelectOption(label=_option_label(account), value=account.account_id)
                for account in accounts
            ],
        )
        select.callback = self._selected
        self._select = select
        self.add_item(select)

    async def _selected(self, interaction: discord.Interaction) -> None:
        await self._on_select(interaction, self._select.values[0])
