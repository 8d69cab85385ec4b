"""
Configuration loading and validation for the Deribit HTTP client.

Single source of truth: the client, auth manager and CLI all take an
HttpConfig built here, either from the environment (.env supported) or
from a TOML file.
"""

import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path

from dotenv import load_dotenv

from rate_limiter import DEFAULT_LIMITS, RateLimitCategory

PRODUCTION_BASE_URL = "https://www.deribit.com/api/v2"
TESTNET_BASE_URL = "https://test.deribit.com/api/v2"
DEFAULT_TIMEOUT = 30.0
MAX_RETRIES = 3
DEFAULT_USER_AGENT = "deribit-http/0.1.0"

GRANT_TYPES = ("client_credentials", "client_signature")


class ConfigurationError(Exception):
    """Raised when configuration is missing or invalid."""


@dataclass(frozen=True)
class ApiCredentials:
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    grant_type: str = "client_credentials"

    def is_valid(self) -> bool:
        """Both client_id and client_secret are set and non-empty."""
        return bool(self.client_id) and bool(self.client_secret)

    @classmethod
    def from_env(cls) -> 'ApiCredentials':
        return cls(
            client_id=os.getenv("DERIBIT_CLIENT_ID"),
            client_secret=os.getenv("DERIBIT_CLIENT_SECRET"),
            grant_type=os.getenv("DERIBIT_GRANT_TYPE", "client_credentials"),
        )


@dataclass(frozen=True)
class BucketConfig:
    capacity: int
    refill_rate: int


def _bucket(category: RateLimitCategory) -> BucketConfig:
    return BucketConfig(*DEFAULT_LIMITS[category])


@dataclass(frozen=True)
class RateLimitConfig:
    trading: BucketConfig = field(default_factory=lambda: _bucket(RateLimitCategory.TRADING))
    market_data: BucketConfig = field(default_factory=lambda: _bucket(RateLimitCategory.MARKET_DATA))
    account: BucketConfig = field(default_factory=lambda: _bucket(RateLimitCategory.ACCOUNT))
    auth: BucketConfig = field(default_factory=lambda: _bucket(RateLimitCategory.AUTH))
    general: BucketConfig = field(default_factory=lambda: _bucket(RateLimitCategory.GENERAL))

    def as_limits(self) -> dict[RateLimitCategory, tuple[int, int]]:
        """Mapping in the shape RateLimiter(limits=...) expects."""
        return {
            category: (bucket.capacity, bucket.refill_rate)
            for category in RateLimitCategory
            for bucket in (getattr(self, category.value),)
        }


@dataclass(frozen=True)
class HttpConfig:
    base_url: str = TESTNET_BASE_URL
    timeout: float = DEFAULT_TIMEOUT
    max_retries: int = MAX_RETRIES
    retry_delay: float = 0.5
    retry_backoff_factor: float = 2.0
    user_agent: str = DEFAULT_USER_AGENT
    testnet: bool = True
    credentials: ApiCredentials | None = None
    token_refresh_margin: float = 60.0
    rate_limits: RateLimitConfig = RateLimitConfig()

    @classmethod
    def testnet_config(cls) -> 'HttpConfig':
        return cls(base_url=TESTNET_BASE_URL, testnet=True)

    @classmethod
    def production_config(cls) -> 'HttpConfig':
        return cls(base_url=PRODUCTION_BASE_URL, testnet=False)

    def with_timeout(self, timeout: float) -> 'HttpConfig':
        return replace(self, timeout=timeout)

    def with_max_retries(self, max_retries: int) -> 'HttpConfig':
        return replace(self, max_retries=max_retries)

    def with_user_agent(self, user_agent: str) -> 'HttpConfig':
        return replace(self, user_agent=user_agent)

    def with_oauth2(self, client_id: str, client_secret: str) -> 'HttpConfig':
        return replace(self, credentials=ApiCredentials(client_id, client_secret))

    def with_credentials(self, credentials: ApiCredentials | None) -> 'HttpConfig':
        return replace(self, credentials=credentials)

    def has_credentials(self) -> bool:
        return self.credentials is not None and self.credentials.is_valid()


def _env_number(name: str, cast, default):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from None


def load_from_env(env_file: str | Path | None = None) -> HttpConfig:
    """Build an HttpConfig from DERIBIT_* environment variables.

    A .env file is loaded first (without overriding variables already set).
    Testnet is the default unless DERIBIT_TESTNET is set to something other
    than "true".
    """
    load_dotenv(dotenv_path=env_file)

    testnet = os.getenv("DERIBIT_TESTNET", "true").strip().lower() == "true"
    config = HttpConfig.testnet_config() if testnet else HttpConfig.production_config()

    credentials = ApiCredentials.from_env()
    config = replace(
        config,
        timeout=_env_number("DERIBIT_HTTP_TIMEOUT", float, config.timeout),
        max_retries=_env_number("DERIBIT_HTTP_MAX_RETRIES", int, config.max_retries),
        user_agent=os.getenv("DERIBIT_HTTP_USER_AGENT") or config.user_agent,
        credentials=credentials if credentials.is_valid() else None,
    )
    return config


def _rate_limits_from_raw(raw: dict) -> RateLimitConfig:
    buckets = {}
    for category in RateLimitCategory:
        section = raw.get(category.value)
        if section is None:
            continue
        default = _bucket(category)
        try:
            buckets[category.value] = BucketConfig(
                capacity=int(section.get("capacity", default.capacity)),
                refill_rate=int(section.get("refill_rate", default.refill_rate)),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"Invalid [rate_limits.{category.value}] section: {e}") from None
    return RateLimitConfig(**buckets)


def load_config(config_path: str | Path = "deribit.toml") -> HttpConfig:
    """Load configuration from a TOML file.

    Missing sections/keys fall back to defaults. When the file carries no
    credentials, DERIBIT_CLIENT_ID / DERIBIT_CLIENT_SECRET from the
    environment (or a .env beside the file) are used.
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise ConfigurationError(f"Configuration file '{config_path}' not found.")

    try:
        with open(config_file, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Could not parse {config_path}: {e}") from None

    http_raw = dict(raw.get("http", {}))
    testnet = bool(http_raw.pop("testnet", True))
    base = HttpConfig.testnet_config() if testnet else HttpConfig.production_config()

    try:
        config = replace(base, **http_raw)
    except TypeError as e:
        raise ConfigurationError(f"Unknown key in [http] section: {e}") from None

    creds_raw = raw.get("credentials")
    if creds_raw:
        try:
            credentials = ApiCredentials(**creds_raw)
        except TypeError as e:
            raise ConfigurationError(f"Unknown key in [credentials] section: {e}") from None
    else:
        load_dotenv(dotenv_path=config_file.resolve().parent / ".env")
        credentials = ApiCredentials.from_env()

    return replace(
        config,
        credentials=credentials if credentials.is_valid() else None,
        rate_limits=_rate_limits_from_raw(raw.get("rate_limits", {})),
    )


def validate_config(config: HttpConfig) -> None:
    """Raise ConfigurationError describing the first problem found."""
    if not config.base_url:
        raise ConfigurationError("Base URL cannot be empty")
    if not config.base_url.startswith(("http://", "https://")):
        raise ConfigurationError(f"Base URL must be http(s): {config.base_url}")
    if config.timeout <= 0:
        raise ConfigurationError("Timeout must be greater than 0")
    if config.max_retries < 0:
        raise ConfigurationError("Max retries cannot be negative")

    creds = config.credentials
    if creds is not None:
        if not creds.client_id:
            raise ConfigurationError("Client ID is required when credentials are set")
        if not creds.client_secret:
            raise ConfigurationError("Client secret is required when using OAuth2")
        if creds.grant_type not in GRANT_TYPES:
            raise ConfigurationError(f"Unsupported grant type: {creds.grant_type}")

    for category, (capacity, refill_rate) in config.rate_limits.as_limits().items():
        if capacity < 1 or refill_rate < 1:
            raise ConfigurationError(
                f"Rate limit for {category.value} must have capacity and refill_rate >= 1"
            )
