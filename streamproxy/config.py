"""Proxy settings: environment variables, optionally backed by a dotenv file."""

import ipaddress
import logging
import os
from functools import cached_property
from pathlib import Path
from pydantic_settings import BaseSettings

_cfg_logger = logging.getLogger("config")

# Checkout directory holding the streamproxy package.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _env_file_path() -> Path:
    """Locate the dotenv file for this process.

    ``STREAMPROXY_ENV_FILE`` overrides the location; relative values are
    taken from the checkout directory, not the launch directory.
    """
    override = os.environ.get("STREAMPROXY_ENV_FILE", "")
    if not override:
        return _PROJECT_ROOT / ".env"
    path = Path(override)
    if not path.is_absolute():
        path = _PROJECT_ROOT / path
    return path


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    # -- Listener -------------------------------------------------------------

    host: str = "0.0.0.0"
    port: int = 3000
    cors_allowed_origins: str = "*"
    # CIDRs whose X-Forwarded-For is believed when identifying clients.
    trusted_proxies: str = ""

    # -- Admission ------------------------------------------------------------

    rate_limit_window_s: int = 60
    rate_limit_max_requests: int = 10

    # -- Upstream fetch -------------------------------------------------------

    fetch_max_attempts: int = 3
    fetch_initial_backoff_ms: int = 1000
    upstream_timeout_s: float = 30.0
    provider_timeout_s: float = 15.0
    upstream_rate_limit_retry_after_s: int = 60
    default_user_agent: str = "Mozilla/5.0"

    # -- Relay ----------------------------------------------------------------

    max_payload_bytes: int = 25 * 1024 * 1024
    keepalive_interval_s: float = 10.0  # 0 disables liveness pulses
    request_deadline_s: float = 120.0

    model_config = {
        "env_file": str(_env_file_path()),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @cached_property
    def cors_origins(self) -> list[str]:
        """Origins allowed to embed proxied media; empty means any origin."""
        return _split_csv(self.cors_allowed_origins) or ["*"]

    @cached_property
    def trusted_networks(self) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
        networks = []
        for entry in _split_csv(self.trusted_proxies):
            try:
                networks.append(ipaddress.ip_network(entry, strict=False))
            except ValueError:
                _cfg_logger.warning("Ignoring invalid TRUSTED_PROXIES entry: %r", entry)
        return networks

    def warn_insecure_defaults(self):
        """Log warnings about risky defaults. Called once at startup."""
        if self.cors_origins == ["*"]:
            _cfg_logger.info(
                "CORS_ALLOWED_ORIGINS is '*' -- any web page may embed proxied "
                "media. Restrict it if the proxy is exposed publicly."
            )
        if not self.trusted_proxies:
            _cfg_logger.info(
                "TRUSTED_PROXIES is empty -- X-Forwarded-For headers will be "
                "ignored and clients are rate limited by their direct address. "
                "Set TRUSTED_PROXIES if running behind a reverse proxy "
                "(e.g. TRUSTED_PROXIES=127.0.0.1/32,::1/128)."
            )
        if self.keepalive_interval_s and self.keepalive_interval_s >= self.request_deadline_s:
            _cfg_logger.warning(
                "KEEPALIVE_INTERVAL_S (%.1f) >= REQUEST_DEADLINE_S (%.1f): "
                "liveness pulses will never fire",
                self.keepalive_interval_s, self.request_deadline_s,
            )


settings = Settings()
