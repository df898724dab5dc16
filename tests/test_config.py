"""Tests for settings and rule loading."""

import logging
from decimal import Decimal
from pathlib import Path

import pytest

from src.config import Settings
from src.engine.rules import load_rules


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.db_path == Path("data/reconciliation.db")
        assert settings.batch_size == 1000
        assert settings.workers == 2
        assert settings.rules_path is None

    def test_environment_overrides(self, tmp_path):
        settings = Settings.from_env({
            "RECON_DB_PATH": str(tmp_path / "x.db"),
            "RECON_BATCH_SIZE": "50",
            "RECON_WORKERS": "4",
        })
        assert settings.db_path == tmp_path / "x.db"
        assert settings.batch_size == 50
        assert settings.workers == 4

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError, match="RECON_BATCH_SIZE"):
            Settings.from_env({"RECON_BATCH_SIZE": "0"})


class TestRuleLoading:
    def test_yaml_rules(self, tmp_path):
        rules_file = tmp_path / "rules.yaml"
        rules_file.write_text(
            "version: 2\n"
            "duplicate:\n"
            "  fields: [transactionId, amount]\n"
            "partial_match:\n"
            "  amount_tolerance: 0.05\n"
        )

        rules = Settings(rules_path=rules_file).load_rules()

        assert rules.version == 2
        assert rules.duplicate.fields == ("transactionId", "amount")
        assert rules.tolerance == Decimal("0.05")

    def test_missing_file_gives_defaults_with_warning(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING, logger="src.engine.rules"):
            rules = load_rules(tmp_path / "nope.yaml")

        assert rules.version == 1
        assert rules.tolerance == Decimal("0.02")
        assert "nope.yaml not found" in caplog.text

    def test_no_path_is_silent(self, caplog):
        with caplog.at_level(logging.WARNING, logger="src.engine.rules"):
            assert load_rules(None).version == 1
        assert caplog.text == ""

    def test_rule_fields(self, tmp_path):
        rules_file = tmp_path / "rules.yaml"
        rules_file.write_text(
            "exact_match:\n"
            "  fields: [referenceNumber, amount]\n"
            "partial_match:\n"
            "  fields: transactionId\n"
        )

        rules = load_rules(rules_file)

        assert rules.exact_match.fields == ("referenceNumber", "amount")
        assert rules.partial_match.fields == ("transactionId",)

    def test_unknown_rule_field(self, tmp_path):
        rules_file = tmp_path / "rules.yaml"
        rules_file.write_text("partial_match:\n  fields: [iban]\n")
        with pytest.raises(ValueError, match="Unknown field"):
            load_rules(rules_file)

    def test_out_of_range_tolerance(self, tmp_path):
        rules_file = tmp_path / "rules.yaml"
        rules_file.write_text("partial_match:\n  amount_tolerance: 3\n")
        with pytest.raises(ValueError):
            load_rules(rules_file)
