import asyncio
import logging

from dotenv import load_dotenv

from application.verification import VerificationOrchestrator
from domain.errors import ConfigError
from infrastructure.config import Settings, load_role_bindings, load_settings
from infrastructure.db.account_repository_postgres import PostgresAccountRepository
from infrastructure.db.account_repository_sqlite import SqliteAccountRepository
from infrastructure.logging_setup import configure_logging
from infrastructure.riot.riot_client import RiotClient
from interfaces.discord.handlers import create_discord_bot


log = logging.getLogger("discord_main")


def build_account_repository(settings: Settings):
    if settings.db_backend == "postgres":
        return PostgresAccountRepository(settings.postgres_params)
    return SqliteAccountRepository(settings.db_path)


async def run(settings: Settings) -> None:
    bindings = load_role_bindings(settings.role_bindings_path)
    bindings.warn_missing_fallbacks()

    account_repo = build_account_repository(settings)
    riot_client = RiotClient(
        settings.riot_api_key,
        settings.riot_api_key_tft,
        region=settings.riot_region,
        platform=settings.riot_platform,
        timeout=settings.riot_timeout_seconds,
    )
    orchestrator = VerificationOrchestrator(
        account_repo,
        riot_client,
        riot_client,
        bindings,
        timeout=settings.verification_timeout_seconds,
    )

    bot = create_discord_bot(settings, account_repo, riot_client, bindings, orchestrator)
    try:
        async with bot:
            await bot.start(settings.discord_token)
    finally:
        orchestrator.cancel_all()
        await riot_client.close()
        log.info("Bot stopped")


def main() -> None:
    load_dotenv()
    try:
        settings = load_settings()
    except ConfigError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc

    configure_logging(settings.log_level, settings.log_dir)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        log.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
