"""
Configuration management and loading.

Reads the ledger's YAML configuration with strict validation.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from croniter import croniter

from usage_ledger.core.buffer import DEFAULT_BUFFER_SIZE, DEFAULT_FLUSH_CRON
from usage_ledger.core.digest import DEFAULT_COMPRESSION
from usage_ledger.core.pricing import DEFAULT_PRICING_TABLE, ModelPricing, PricingTable
from usage_ledger.storage.db import DEFAULT_DB_PATH

DEFAULT_SETTLEMENT_CRON = "0 * * * *"
DEFAULT_CLAIM_TIMEOUT_MINUTES = 120
LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class BufferConfig:
    size: int = DEFAULT_BUFFER_SIZE
    flush_cron: str = DEFAULT_FLUSH_CRON

    def __post_init__(self):
        if self.size <= 0:
            raise ValueError("buffer.size must be > 0")
        _check_cron(self.flush_cron, "buffer.flush_cron")


@dataclass(frozen=True)
class SettlementConfig:
    cron: str = DEFAULT_SETTLEMENT_CRON
    claim_timeout_minutes: int = DEFAULT_CLAIM_TIMEOUT_MINUTES

    def __post_init__(self):
        _check_cron(self.cron, "settlement.cron")
        if self.claim_timeout_minutes <= 0:
            raise ValueError("settlement.claim_timeout_minutes must be > 0")

    @property
    def claim_timeout(self) -> timedelta:
        return timedelta(minutes=self.claim_timeout_minutes)


@dataclass(frozen=True)
class QuotaConfig:
    """Settings for quota rows created on a user's first event."""
    default_enabled: bool = False
    default_cost_limit_usd: Decimal = Decimal("0")

    def __post_init__(self):
        if self.default_cost_limit_usd < 0:
            raise ValueError("quota.default_cost_limit_usd cannot be negative")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None

    def __post_init__(self):
        if self.level.upper() not in LOG_LEVELS:
            raise ValueError(f"logging.level must be one of: {list(LOG_LEVELS)}")


@dataclass(frozen=True)
class LedgerConfig:
    """Complete ledger configuration."""
    database_path: str = DEFAULT_DB_PATH
    buffer: BufferConfig = field(default_factory=BufferConfig)
    settlement: SettlementConfig = field(default_factory=SettlementConfig)
    digest_compression: float = DEFAULT_COMPRESSION
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    pricing: PricingTable = field(default_factory=lambda: DEFAULT_PRICING_TABLE)

    def __post_init__(self):
        if self.digest_compression <= 0:
            raise ValueError("latency.digest_compression must be > 0")

    @classmethod
    def defaults(cls, database_path: str = DEFAULT_DB_PATH) -> "LedgerConfig":
        return cls(database_path=database_path)


_SECTION_KEYS = {
    "database": {"path"},
    "buffer": {"size", "flush_cron"},
    "settlement": {"cron", "claim_timeout_minutes"},
    "latency": {"digest_compression"},
    "quota": {"default_enabled", "default_cost_limit_usd"},
    "logging": {"level", "file"},
    "pricing": None,
}
_PRICING_KEYS = {"input_per_million", "output_per_million",
                 "cache_read_per_million", "cache_write_per_million"}
_REQUIRED_PRICING_KEYS = {"input_per_million", "output_per_million"}


def load_ledger_config(path: str) -> LedgerConfig:
    """Load and validate ledger configuration from YAML file.

    Every section is optional; omitted values take their defaults and an
    omitted ``pricing`` section means the built-in price table.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Ledger config file not found: {path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return LedgerConfig.defaults()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS if name != "pricing"}

    database = sections["database"]
    buffer = sections["buffer"]
    settlement = sections["settlement"]
    latency = sections["latency"]
    quota = sections["quota"]
    logging_section = sections["logging"]

    return LedgerConfig(
        database_path=_string(database.get("path", DEFAULT_DB_PATH), "database.path"),
        buffer=BufferConfig(
            size=_integer(buffer.get("size", DEFAULT_BUFFER_SIZE), "buffer.size"),
            flush_cron=_string(buffer.get("flush_cron", DEFAULT_FLUSH_CRON), "buffer.flush_cron"),
        ),
        settlement=SettlementConfig(
            cron=_string(settlement.get("cron", DEFAULT_SETTLEMENT_CRON), "settlement.cron"),
            claim_timeout_minutes=_integer(
                settlement.get("claim_timeout_minutes", DEFAULT_CLAIM_TIMEOUT_MINUTES),
                "settlement.claim_timeout_minutes",
            ),
        ),
        digest_compression=float(_number(
            latency.get("digest_compression", DEFAULT_COMPRESSION), "latency.digest_compression")),
        quota=QuotaConfig(
            default_enabled=_boolean(quota.get("default_enabled", False), "quota.default_enabled"),
            default_cost_limit_usd=_number(quota.get("default_cost_limit_usd", 0),
                                           "quota.default_cost_limit_usd"),
        ),
        logging=LoggingConfig(
            level=_string(logging_section.get("level", "INFO"), "logging.level").upper(),
            file=_optional_string(logging_section.get("file"), "logging.file"),
        ),
        pricing=_parse_pricing(raw_config["pricing"]) if "pricing" in raw_config
        else DEFAULT_PRICING_TABLE,
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _parse_pricing(data: Any) -> PricingTable:
    """Parse the per-model price table.

    Raises:
        ValueError: If a model entry is malformed or a rate is negative
    """
    if not isinstance(data, dict) or not data:
        raise ValueError("'pricing' must be a non-empty dictionary")

    prices = {}
    for model, rates in data.items():
        path = f"pricing.{model}"
        if not isinstance(rates, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        unknown_keys = set(rates.keys()) - _PRICING_KEYS
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        missing = _REQUIRED_PRICING_KEYS - set(rates.keys())
        if missing:
            raise ValueError(f"Missing required keys in {path}: {missing}")
        prices[str(model)] = ModelPricing(
            **{name: _number(value, f"{path}.{name}") for name, value in rates.items()}
        )
    return PricingTable(prices)


def _check_cron(expression: str, path: str) -> None:
    if not croniter.is_valid(expression):
        raise ValueError(f"'{path}' is not a valid cron expression: {expression!r}")


def _number(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if not number.is_finite():
        raise ValueError(f"'{path}' must be a finite number")
    return number


def _integer(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _boolean(value: Any, path: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"'{path}' must be true or false")
    return value


def _string(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{path}' must be a non-empty string")
    return value


def _optional_string(value: Any, path: str) -> Optional[str]:
    return None if value is None else _string(value, path)
