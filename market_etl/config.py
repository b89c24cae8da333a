"""
Configuration for the ingestion core.

Provider budgets come from a YAML file (``config/providers.yaml``);
database and tuning knobs come from environment variables, optionally
loaded from a ``.env`` file via python-dotenv.

Expected YAML format:
```yaml
default:
  capacity: 60
  window_seconds: 60

providers:
  alphavantage:
    capacity: 75
    window_seconds: 60
    max_concurrency: 5
    default_ttl_seconds: 86400
    security_types: [Equity, ETF, MutualFund]
```
"""

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from market_etl.core.models import SecurityType
from market_etl.utils.validation import validate_source_name

DEFAULT_TTL_SECONDS = 24 * 3600


class ProviderConfig(BaseModel):
    """
    Per-provider request contract and loader defaults.

    Attributes:
        source: Provider name (lower case)
        capacity: Requests allowed per rolling window
        window_seconds: Rolling window length
        max_concurrency: Loader-level parallel requests for this provider
        default_ttl_seconds: TTL loaders use when a data category has none
        security_types: Security types this provider's identifiers cover
        base_url: Root URL for HttpUpstream
        api_key_env: Name of the environment variable holding the API key
        api_key_param: Query parameter the API key is sent as
    """

    source: str
    capacity: int = Field(default=60, ge=1)
    window_seconds: float = Field(default=60.0, gt=0)
    max_concurrency: int = Field(default=5, ge=1)
    default_ttl_seconds: float = Field(default=DEFAULT_TTL_SECONDS, gt=0)
    security_types: list[SecurityType] = Field(default_factory=list)
    base_url: str | None = None
    api_key_env: str | None = None
    api_key_param: str | None = None

    @field_validator("source")
    @classmethod
    def normalize_source(cls, v: str) -> str:
        return validate_source_name(v)

    @property
    def api_key(self) -> str | None:
        return os.getenv(self.api_key_env) if self.api_key_env else None


class ResolutionConfig(BaseModel):
    verify_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    fuzzy_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    fuzzy_confidence_cap: float = Field(default=0.8, ge=0.0, le=1.0)
    sweep_concurrency: int = Field(default=4, ge=1)


class DatabaseConfig(BaseModel):
    host: str = "localhost"
    port: int = 5432
    database: str = "market_data"
    user: str = "etl"
    password: str | None = None
    min_size: int = 2
    max_size: int = 10
    timeout: float = 30.0


# Budgets used when no providers file is present.
DEFAULT_PROVIDERS: dict[str, dict[str, Any]] = {
    "alphavantage": {
        "capacity": 75,
        "window_seconds": 60,
        "max_concurrency": 5,
        "security_types": [
            "Equity", "PreferredStock", "ETF", "MutualFund", "REIT", "ADR",
        ],
        "base_url": "https://www.alphavantage.co/query",
        "api_key_env": "ALPHA_VANTAGE_API_KEY",
        "api_key_param": "apikey",
    },
    "coingecko": {
        "capacity": 30,
        "window_seconds": 60,
        "max_concurrency": 3,
        "security_types": ["Cryptocurrency"],
        "base_url": "https://api.coingecko.com/api/v3",
        "api_key_env": "COINGECKO_API_KEY",
        "api_key_param": "x_cg_demo_api_key",
    },
    "coinpaprika": {
        "capacity": 10,
        "window_seconds": 1,
        "max_concurrency": 3,
        "security_types": ["Cryptocurrency"],
        "base_url": "https://api.coinpaprika.com/v1",
    },
    "coinmarketcap": {
        "capacity": 30,
        "window_seconds": 60,
        "max_concurrency": 2,
        "security_types": ["Cryptocurrency"],
        "base_url": "https://pro-api.coinmarketcap.com/v1",
        "api_key_env": "CMC_API_KEY",
    },
}


class Settings(BaseModel):
    default_provider: ProviderConfig = Field(
        default_factory=lambda: ProviderConfig(source="default")
    )
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)
    resolution: ResolutionConfig = Field(default_factory=ResolutionConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    store_backend: str = "postgres"

    def provider(self, source: str) -> ProviderConfig:
        """Config for ``source``, falling back to the default budget."""
        source = validate_source_name(source)
        config = self.providers.get(source)
        if config is None:
            return self.default_provider.model_copy(update={"source": source})
        return config


class ProviderConfigLoader:
    """
    Loads provider budgets from a YAML configuration file.
    """

    def __init__(self, config_path: str | Path):
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise FileNotFoundError(f"Provider configuration file not found: {config_path}")

    def load(self) -> tuple[ProviderConfig, dict[str, ProviderConfig]]:
        """
        Parse the file into (default budget, budgets by source).

        Raises:
            ValueError: If YAML is missing the providers section or an
                entry is not a mapping
        """
        with open(self.config_path) as f:
            config = yaml.safe_load(f)

        if not config or "providers" not in config:
            raise ValueError("Configuration file must contain 'providers' section")

        default_def = config.get("default") or {}
        if not isinstance(default_def, dict):
            raise ValueError("'default' section must be a mapping")
        default = ProviderConfig(source="default", **default_def)

        providers = {}
        for source, provider_def in (config["providers"] or {}).items():
            if not isinstance(provider_def, dict):
                raise ValueError(f"Configuration for provider '{source}' must be a mapping")
            provider = ProviderConfig(source=source, **provider_def)
            providers[provider.source] = provider

        return default, providers


def load_settings(
    providers_path: str | Path | None = None,
    env_file: str | Path | None = None,
) -> Settings:
    """
    Build Settings from the environment and the providers YAML.

    Environment variables:
        MARKET_ETL_PROVIDERS_FILE: providers YAML (default config/providers.yaml)
        MARKET_ETL_STORE: "postgres" or "memory"
        MARKET_ETL_VERIFY_THRESHOLD, MARKET_ETL_FUZZY_THRESHOLD
        DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD
    """
    if env_file is not None:
        load_dotenv(env_file, override=True)
    else:
        load_dotenv()

    providers_path = providers_path or os.getenv(
        "MARKET_ETL_PROVIDERS_FILE", "config/providers.yaml"
    )
    if Path(providers_path).exists():
        default, providers = ProviderConfigLoader(providers_path).load()
    else:
        default = ProviderConfig(source="default")
        providers = {
            name: ProviderConfig(source=name, **definition)
            for name, definition in DEFAULT_PROVIDERS.items()
        }

    resolution = ResolutionConfig(
        verify_threshold=float(os.getenv("MARKET_ETL_VERIFY_THRESHOLD", "0.95")),
        fuzzy_threshold=float(os.getenv("MARKET_ETL_FUZZY_THRESHOLD", "0.85")),
    )

    database = DatabaseConfig(
        host=os.getenv("DB_HOST", "localhost"),
        port=int(os.getenv("DB_PORT", "5432")),
        database=os.getenv("DB_NAME", "market_data"),
        user=os.getenv("DB_USER", "etl"),
        password=os.getenv("DB_PASSWORD"),
    )

    return Settings(
        default_provider=default,
        providers=providers,
        resolution=resolution,
        database=database,
        store_backend=os.getenv("MARKET_ETL_STORE", "postgres"),
    )
