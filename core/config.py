"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for passkeykit happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. rp_id -> RP_ID, origin -> ORIGIN).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Enforces the relying-party / origin relationship and refuses a
      non-persistent store outside development mode.

Layer rule: core/ is the kernel. This module may not import from api/,
store/, or client/.
"""

import logging
from functools import lru_cache
from urllib.parse import urlparse

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("passkeykit.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings(debug=True) can be instantiated in
    test environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False

    # ------------------------------------------------------------------
    # Relying party
    # ------------------------------------------------------------------

    rp_name: str = "Passkey Demo"
    # Must equal the domain users authenticate against (or a parent of it).
    rp_id: str = "localhost"
    # Full scheme://host[:port] the browser reports in clientDataJSON.
    origin: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    # Empty string means "use the in-memory store" (development only).
    database_url: str = ""

    # ------------------------------------------------------------------
    # Ceremonies
    # ------------------------------------------------------------------

    challenge_ttl_seconds: int = 300
    challenge_sweep_seconds: int = 60
    ceremony_timeout_ms: int = 60000

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_relying_party(self) -> "Settings":
        """Reject an ORIGIN whose host is not RP_ID or a subdomain of it.

        The external verifier would reject every ceremony in that case; failing
        at startup turns a confusing runtime error into a configuration error.
        """
        host = urlparse(self.origin).hostname or ""
        if not self.rp_id:
            raise ValueError("RP_ID must not be empty.")
        if host != self.rp_id and not host.endswith("." + self.rp_id):
            raise ValueError(f"ORIGIN host {host!r} does not belong to RP_ID {self.rp_id!r}.")
        return self

    @model_validator(mode="after")
    def validate_storage(self) -> "Settings":
        """Refuse to run in production mode without a persistent store.

        Dev mode (DEBUG=true): an empty DATABASE_URL selects the in-memory
            store with a warning. Users and challenges vanish on restart.

        Production mode (DEBUG=false or not set): an empty DATABASE_URL is a
            hard startup failure.
        """
        if not self.database_url:
            if self.debug:
                logger.warning("WARNING: No DATABASE_URL set. Using the in-memory store; data is lost on restart.")
            else:
                raise ValueError(
                    "DATABASE_URL is required in production mode. "
                    "Set DATABASE_URL in your environment or .env file. "
                    "To run with the in-memory store, set DEBUG=true."
                )
        if self.challenge_ttl_seconds <= 0:
            raise ValueError("CHALLENGE_TTL_SECONDS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
