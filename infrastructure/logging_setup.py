from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Iterable, List, Optional

from infrastructure.config import SECRET_ENV_KEYS


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_NAME = "rank_bot.log"
REDACTED = "***REDACTED***"


class RedactSecretsFilter(logging.Filter):
    """Replace secret values (tokens, API keys) in formatted log messages."""

    def __init__(self, secrets: Iterable[str]) -> None:
        super().__init__()
        self.secrets = [secret for secret in secrets if secret]

    @classmethod
    def from_env(cls, keys: Iterable[str] = SECRET_ENV_KEYS) -> "RedactSecretsFilter":
        return cls(os.getenv(key) or "" for key in keys)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        try:
            message = str(record.getMessage())
        except (TypeError, ValueError):
            # Leave malformed records to the formatter's own error reporting.
            return True

        redacted = message
        for secret in self.secrets:
            if secret in redacted:
                redacted = redacted.replace(secret, REDACTED)
        if redacted != message:
            # The message is now fully formatted; args must not be applied twice.
            record.msg = redacted
            record.args = ()
        return True


def configure_logging(
    level: str = "INFO",
    log_dir: Optional[str] = "logs",
    secrets: Optional[Iterable[str]] = None,
) -> None:
    """
    Configure the root logger: stdout plus a size-rotating file.

    Every handler carries the secret redaction filter. `secrets` defaults
    to the values of the secret environment variables.
    """

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_dir:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                directory / LOG_FILE_NAME,
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
        )

    redact = (
        RedactSecretsFilter.from_env() if secrets is None else RedactSecretsFilter(secrets)
    )
    for handler in handlers:
        handler.addFilter(redact)

    logging.getLogger().handlers.clear()
    logging.basicConfig(level=level.upper(), handlers=handlers, format=LOG_FORMAT)

    logging.getLogger("discord").setLevel(logging.WARNING)
    logging.getLogger("discord.http").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.INFO)

    logging.getLogger(__name__).info("Logging initialized (level %s)", level.upper())
