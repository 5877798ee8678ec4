"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for ledger configs.
"""

import os
import tempfile
from datetime import timedelta
from decimal import Decimal

import pytest
import yaml

from usage_ledger.config.loader import (
    DEFAULT_SETTLEMENT_CRON,
    BufferConfig,
    LedgerConfig,
    load_ledger_config,
)
from usage_ledger.core.pricing import DEFAULT_PRICING_TABLE


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "database": {"path": "/var/lib/ledger/usage.db"},
            "buffer": {"size": 250, "flush_cron": "*/10 * * * *"},
            "settlement": {"cron": "15 * * * *", "claim_timeout_minutes": 30},
            "latency": {"digest_compression": 200},
            "quota": {"default_enabled": True, "default_cost_limit_usd": 50.0},
            "logging": {"level": "debug", "file": "ledger.log"},
            "pricing": {
                "claude-sonnet-4-20250514": {
                    "input_per_million": 3.0,
                    "output_per_million": 15.0,
                    "cache_read_per_million": 0.3,
                    "cache_write_per_million": 3.75,
                },
            },
        }

        config = load_ledger_config(self._write_config(config_data))

        assert config.database_path == "/var/lib/ledger/usage.db"
        assert config.buffer.size == 250
        assert config.buffer.flush_cron == "*/10 * * * *"
        assert config.settlement.cron == "15 * * * *"
        assert config.settlement.claim_timeout == timedelta(minutes=30)
        assert config.digest_compression == 200.0
        assert config.quota.default_enabled is True
        assert config.quota.default_cost_limit_usd == Decimal("50.0")
        assert config.logging.level == "DEBUG"
        assert config.logging.file == "ledger.log"
        pricing = config.pricing.get_pricing("claude-sonnet-4-20250514")
        assert pricing.cache_write_per_million == Decimal("3.75")

    def test_missing_sections_use_defaults(self):
        config = load_ledger_config(self._write_config({"buffer": {"size": 10}}))

        assert config.buffer.size == 10
        assert config.settlement.cron == DEFAULT_SETTLEMENT_CRON
        assert config.pricing is DEFAULT_PRICING_TABLE
        assert config.quota.default_cost_limit_usd == Decimal("0")

    def test_empty_file_gives_defaults(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, "w").close()

        assert load_ledger_config(config_path) == LedgerConfig.defaults()

    def test_missing_file_raises_error(self):
        with pytest.raises(FileNotFoundError, match="Ledger config file not found"):
            load_ledger_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_invalid_yaml_raises_error(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write("buffer: [size: 1\n")

        with pytest.raises(yaml.YAMLError):
            load_ledger_config(config_path)

    def test_non_dict_root_raises_error(self):
        with pytest.raises(ValueError, match="root must be a dictionary"):
            load_ledger_config(self._write_config(["a", "b"]))

    def test_unknown_top_level_key_raises_error(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_ledger_config(self._write_config({"budget": {"daily": 100}}))

    def test_unknown_section_key_raises_error(self):
        with pytest.raises(ValueError, match="Unknown buffer keys"):
            load_ledger_config(self._write_config({"buffer": {"max": 10}}))

    def test_invalid_cron_raises_error(self):
        with pytest.raises(ValueError, match="not a valid cron expression"):
            load_ledger_config(self._write_config({"settlement": {"cron": "hourly"}}))

    def test_non_positive_buffer_size_raises_error(self):
        with pytest.raises(ValueError, match="buffer.size must be > 0"):
            load_ledger_config(self._write_config({"buffer": {"size": 0}}))

    def test_boolean_is_not_an_integer(self):
        with pytest.raises(ValueError, match="must be an integer"):
            load_ledger_config(self._write_config({"buffer": {"size": True}}))

    def test_negative_price_raises_error(self):
        config_data = {"pricing": {"m": {"input_per_million": -1, "output_per_million": 1}}}
        with pytest.raises(ValueError, match="input_per_million cannot be negative"):
            load_ledger_config(self._write_config(config_data))

    def test_pricing_requires_input_and_output(self):
        config_data = {"pricing": {"m": {"input_per_million": 1}}}
        with pytest.raises(ValueError, match="Missing required keys"):
            load_ledger_config(self._write_config(config_data))

    def test_negative_default_limit_raises_error(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            load_ledger_config(self._write_config({"quota": {"default_cost_limit_usd": -5}}))

    def test_non_finite_numbers_raise_error(self):
        for text in ("quota:\n  default_cost_limit_usd: .nan\n",
                     "latency:\n  digest_compression: .inf\n",
                     "pricing:\n  m:\n    input_per_million: Infinity\n    output_per_million: 1\n"):
            config_path = os.path.join(self.temp_dir, "config.yaml")
            with open(config_path, 'w', encoding='utf-8') as f:
                f.write(text)
            with pytest.raises(ValueError, match="must be a finite number"):
                load_ledger_config(config_path)

    def test_non_numeric_string_raises_error(self):
        with pytest.raises(ValueError, match="must be a number"):
            load_ledger_config(self._write_config({"quota": {"default_cost_limit_usd": "ten"}}))

    def test_invalid_log_level_raises_error(self):
        with pytest.raises(ValueError, match="logging.level must be one of"):
            load_ledger_config(self._write_config({"logging": {"level": "VERBOSE"}}))


class TestConfigObjects:
    def test_buffer_config_validates_cron(self):
        with pytest.raises(ValueError):
            BufferConfig(flush_cron="61 * * * *")

    def test_defaults(self):
        config = LedgerConfig.defaults("ledger.db")
        assert config.database_path == "ledger.db"
        assert config.buffer.size == 1000
        assert config.buffer.flush_cron == "0,30 * * * *"
        assert config.settlement.claim_timeout == timedelta(minutes=120)

    def test_direct_construction_uses_fresh_sections(self):
        first, second = LedgerConfig(), LedgerConfig()
        assert first.buffer == BufferConfig()
        assert first.buffer is not second.buffer
        assert first.logging.level == "INFO"
        assert first.quota.default_cost_limit_usd == Decimal("0")
