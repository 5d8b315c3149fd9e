from __future__ import annotations

import io
import logging

import discord
from discord import app_commands
from discord.ext import commands

from application.services import (
    ExternalContext,
    describe_tiers,
    refresh_accounts,
    start_link,
    unlink_account,
    view_accounts,
)
from application.verification import (
    ConfirmOutcome,
    VerificationChallenge,
    VerificationOrchestrator,
)
from domain.repositories import AccountRepository
from domain.role_bindings import RoleBindings
from infrastructure.config import Settings
from infrastructure.discord.role_gateway import DiscordRoleGateway
from infrastructure.riot.riot_client import RiotClient

from interfaces.discord.views import (
    AccountsView,
    ChallengeView,
    LinkModal,
    PanelView,
    UnlinkView,
    expired_challenge_view,
    report_interaction_error,
    send_ephemeral,
)


log = logging.getLogger(__name__)

GUILD_ONLY_MESSAGE = "❌ This command can only be used inside a server."
EXPIRED_MESSAGE = "⏰ Time expired. Use /link or the panel button to try again."

PANEL_DESCRIPTION = (
    "Link the League of Legends accounts you play with to get the matching "
    "rank roles for SoloQ, Flex, TFT and Double Up.\n\n"
    "**❓ FAQ**\n"
    "• **How many accounts can I link?** Up to 3.\n"
    "• **How do I prove the account is mine?** The bot asks you to switch to a "
    "specific summoner icon and checks it with Riot Games.\n"
    "• **How do I remove an account?** Press **View accounts** and use the unlink button.\n"
    "• **My rank changed but my roles did not.** Press **Refresh ranks**."
)


def _build_external_context(user: discord.abc.User) -> ExternalContext:
    """Create an `ExternalContext` from a Discord user."""

    return ExternalContext(
        provider="discord",
        provider_user_id=str(user.id),
        display_name=user.display_name or user.name,
    )


def create_discord_bot(
    settings: Settings,
    account_repo: AccountRepository,
    riot_client: RiotClient,
    bindings: RoleBindings,
    orchestrator: VerificationOrchestrator,
) -> commands.Bot:
    """
    Configure and return the Discord bot: slash commands, the persistent
    link panel and the icon-verification flow.
    """

    intents = discord.Intents.default()
    intents.guilds = True

    bot = commands.Bot(command_prefix=commands.when_mentioned, intents=intents, help_command=None)

    # ---- flows shared by slash commands and panel buttons ----

    async def open_link_modal(interaction: discord.Interaction) -> None:
        await interaction.response.send_modal(LinkModal(on_link_submitted))

    async def on_link_submitted(interaction: discord.Interaction, game_name: str, tag_line: str) -> None:
        if interaction.guild is None:
            await send_ephemeral(interaction, GUILD_ONLY_MESSAGE)
            return
        await interaction.response.defer(ephemeral=True, thinking=True)

        async def on_expire(challenge: VerificationChallenge) -> None:
            await interaction.edit_original_response(
                content=EXPIRED_MESSAGE,
                embed=None,
                view=expired_challenge_view(),
            )

        result = await start_link(
            _build_external_context(interaction.user),
            game_name,
            tag_line,
            account_repo,
            riot_client,
            orchestrator,
            on_expire=on_expire,
            ddragon_version=settings.ddragon_version,
        )
        if not result.success:
            await interaction.edit_original_response(content=result.message)
            return

        challenge = result.challenge
        account = challenge.account
        minutes = max(1, int(orchestrator.timeout // 60))
        embed = discord.Embed(
            title="Verify your account",
            description=(
                f"{result.message}\n\nYou have **{minutes} minute(s)** to complete the verification."
            ),
            color=discord.Color.blue(),
        )
        embed.set_thumbnail(url=result.icon_url)
        embed.set_footer(text=f"Icon #{challenge.expected_icon_id}")

        await interaction.edit_original_response(
            content=f"Riot ID: **{account.display_name}#{account.tag_line}**",
            embed=embed,
            view=ChallengeView(challenge.token, on_confirm, timeout=orchestrator.timeout + 60),
        )

    async def on_confirm(interaction: discord.Interaction, token: str) -> None:
        if interaction.guild is None:
            await send_ephemeral(interaction, GUILD_ONLY_MESSAGE)
            return
        await interaction.response.defer()

        result = await orchestrator.confirm(
            token,
            str(interaction.user.id),
            DiscordRoleGateway(interaction.guild),
        )

        if result.outcome in (ConfirmOutcome.NOT_OWNER, ConfirmOutcome.BUSY):
            await interaction.followup.send(result.message, ephemeral=True)
        elif not result.terminal:
            # Keep the icon and the button so the user can retry.
            await interaction.edit_original_response(content=result.message)
        else:
            await interaction.edit_original_response(content=result.message, embed=None, view=None)

    async def show_accounts(interaction: discord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True, thinking=True)
        result = await view_accounts(_build_external_context(interaction.user), account_repo)
        if not result.success:
            await interaction.edit_original_response(content=result.message)
            return

        embed = discord.Embed(
            title="Linked accounts",
            description="The League of Legends accounts linked to your Discord.",
            color=discord.Color.green(),
        )
        for index, account in enumerate(result.accounts, start=1):
            embed.add_field(
                name=f"Account {index}: {account.riot_id}",
                value=describe_tiers(account),
                inline=False,
            )
        embed.set_footer(
            text=f"You can link up to {result.limit} accounts. ({len(result.accounts)}/{result.limit})"
        )
        await interaction.edit_original_response(embed=embed, view=AccountsView(show_unlink_menu))

    async def show_unlink_menu(interaction: discord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True, thinking=True)
        result = await view_accounts(_build_external_context(interaction.user), account_repo)
        if not result.success:
            await interaction.edit_original_response(content=result.message)
            return
        await interaction.edit_original_response(
            content="Select the account you want to unlink:",
            view=UnlinkView(result.accounts, on_unlink_selected),
        )

    async def on_unlink_selected(interaction: discord.Interaction, account_id: str) -> None:
        if interaction.guild is None:
            await send_ephemeral(interaction, GUILD_ONLY_MESSAGE)
            return
        await interaction.response.defer()
        result = await unlink_account(
            _build_external_context(interaction.user),
            account_id,
            account_repo,
            DiscordRoleGateway(interaction.guild),
            bindings,
        )
        await interaction.edit_original_response(content=result.message, view=None)

    async def refresh_ranks(interaction: discord.Interaction) -> None:
        if interaction.guild is None:
            await send_ephemeral(interaction, GUILD_ONLY_MESSAGE)
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        result = await refresh_accounts(
            _build_external_context(interaction.user),
            account_repo,
            riot_client,
            DiscordRoleGateway(interaction.guild),
            bindings,
        )
        await interaction.edit_original_response(content=result.message)

    def panel_view() -> PanelView:
        return PanelView(open_link_modal, show_accounts, refresh_ranks)

    # ---- lifecycle ----

    @bot.event
    async def setup_hook():
        bot.add_view(panel_view())
        if settings.guild_id:
            guild = discord.Object(id=settings.guild_id)
            bot.tree.copy_global_to(guild=guild)
            synced = await bot.tree.sync(guild=guild)
            log.info("Synced %d command(s) to guild %s", len(synced), settings.guild_id)
        else:
            synced = await bot.tree.sync()
            log.info("Synced %d global command(s)", len(synced))

    @bot.event
    async def on_ready():
        log.info("Discord bot logged in as %s (id=%s)", bot.user, bot.user.id)

    @bot.tree.error
    async def on_app_command_error(
        interaction: discord.Interaction,
        error: app_commands.AppCommandError,
    ):
        if isinstance(error, app_commands.NoPrivateMessage):
            await send_ephemeral(interaction, GUILD_ONLY_MESSAGE)
            return
        if isinstance(error, app_commands.MissingPermissions):
            await send_ephemeral(interaction, "❌ You are not allowed to use this command.")
            return
        await report_interaction_error(interaction, error)

    # ---- slash commands ----

    @bot.tree.command(name="link", description="Link a League of Legends account to your Discord.")
    @app_commands.guild_only()
    async def link_cmd(interaction: discord.Interaction):
        await open_link_modal(interaction)

    @bot.tree.command(name="accounts", description="Show your linked accounts and their ranks.")
    async def accounts_cmd(interaction: discord.Interaction):
        await show_accounts(interaction)

    @bot.tree.command(name="unlink", description="Unlink one of your League of Legends accounts.")
    @app_commands.guild_only()
    async def unlink_cmd(interaction: discord.Interaction):
        await show_unlink_menu(interaction)

    @bot.tree.command(name="refresh", description="Refresh the ranks of your linked accounts.")
    @app_commands.guild_only()
    async def refresh_cmd(interaction: discord.Interaction):
        await refresh_ranks(interaction)

    @bot.tree.command(name="setup-link", description="Post the account linking panel in this channel.")
    @app_commands.guild_only()
    @app_commands.default_permissions(administrator=True)
    async def setup_link_cmd(interaction: discord.Interaction):
        embed = discord.Embed(
            title="🔎 Link your accounts",
            description=PANEL_DESCRIPTION,
            color=discord.Color.blue(),
        )
        await interaction.response.send_message(embed=embed, view=panel_view())
        log.info("User %s posted the link panel in channel %s", interaction.user.id, interaction.channel_id)

    @bot.tree.command(name="list-roles", description="List every server role with its id.")
    @app_commands.guild_only()
    @app_commands.default_permissions(administrator=True)
    async def list_roles_cmd(interaction: discord.Interaction):
        roles = [role for role in reversed(interaction.guild.roles) if not role.is_default()]
        if not roles:
            await send_ephemeral(interaction, "No roles were found in this server.")
            return

        listing = "\n".join(f"{role.name} - {role.id}" for role in roles)
        await interaction.response.send_message(
            "Here is the full list of roles with their ids:",
            file=discord.File(io.BytesIO(listing.encode("utf-8")), filename="roles.txt"),
            ephemeral=True,
        )

    return bot
