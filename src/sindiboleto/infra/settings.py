"""Runtime configuration, read once from the environment.

Settings is built at startup and passed explicitly to the app factory and
the orchestrator. Nothing else reads os.environ.
"""

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping

from sindiboleto.domain.errors import ConfigurationError

DEFAULT_SESSION_TTL_MINUTES = 15
DEFAULT_MAX_INVALID_ATTEMPTS = 5
DEFAULT_TIMEZONE = "America/Sao_Paulo"


@dataclass(frozen=True)
class LytexCredentials:
    api_url: str
    client_id: str
    client_secret: str


@dataclass(frozen=True)
class Settings:
    database_url: str
    db_password: str | None = None
    session_ttl: timedelta = timedelta(minutes=DEFAULT_SESSION_TTL_MINUTES)
    max_invalid_attempts: int = DEFAULT_MAX_INVALID_ATTEMPTS
    timezone: str = DEFAULT_TIMEZONE
    webhook_secret: str | None = None
    lytex: LytexCredentials | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build Settings from environment variables.

        Raises:
            ConfigurationError: If DATABASE_URL is missing or a value is malformed.
        """
        env = os.environ if environ is None else environ

        database_url = env.get("DATABASE_URL", "").strip()
        if not database_url:
            raise ConfigurationError("DATABASE_URL environment variable not set")

        ttl_minutes = _positive_int(env, "BOLETO_SESSION_TTL_MINUTES", DEFAULT_SESSION_TTL_MINUTES)
        max_attempts = _positive_int(env, "BOLETO_MAX_INVALID_ATTEMPTS", DEFAULT_MAX_INVALID_ATTEMPTS)

        lytex = None
        client_id = env.get("LYTEX_CLIENT_ID", "").strip()
        client_secret = env.get("LYTEX_CLIENT_SECRET", "").strip()
        if client_id or client_secret:
            api_url = env.get("LYTEX_API_URL", "").strip()
            if not (client_id and client_secret and api_url):
                raise ConfigurationError(
                    "LYTEX_API_URL, LYTEX_CLIENT_ID and LYTEX_CLIENT_SECRET must be set together"
                )
            lytex = LytexCredentials(
                api_url=api_url.rstrip("/"),
                client_id=client_id,
                client_secret=client_secret,
            )

        return cls(
            database_url=database_url,
            db_password=env.get("DB_PASSWORD") or None,
            session_ttl=timedelta(minutes=ttl_minutes),
            max_invalid_attempts=max_attempts,
            timezone=env.get("BOLETO_TIMEZONE", "").strip() or DEFAULT_TIMEZONE,
            webhook_secret=env.get("EVOLUTION_WEBHOOK_SECRET") or None,
            lytex=lytex,
        )


def _positive_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer") from None
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive")
    return value
