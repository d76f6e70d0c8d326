"""Tests des réglages et de la numérotation."""
import json
from datetime import datetime

import pytest
from pydantic import ValidationError

from probilling.config import BillingSettings, default_data_dir
from probilling.services.numbering_service import DocumentKind, SequenceNumbering, build_number
from probilling.storage.store import BillingStore


class TestBillingSettings:
    def test_defaults_when_file_missing(self, tmp_path):
        s = BillingSettings.load(tmp_path)
        assert s.default_deposit_percent == 30
        assert (s.quote_prefix, s.invoice_prefix) == ("DEV", "FAC")
        assert s.payment_terms_days == 30
        assert s.backup_keep == 5

    def test_malformed_file_falls_back(self, tmp_path, caplog):
        (tmp_path / "settings.json").write_text("{oops", encoding="utf-8")
        with caplog.at_level("WARNING", logger="probilling.config"):
            s = BillingSettings.load(tmp_path)
        assert s == BillingSettings()
        assert "settings.json" in caplog.text

    def test_invalid_value_is_an_error(self, tmp_path):
        (tmp_path / "settings.json").write_text(json.dumps({"default_deposit_percent": 150}), encoding="utf-8")
        with pytest.raises(ValidationError):
            BillingSettings.load(tmp_path)

    def test_business_overrides(self):
        s = BillingSettings(quote_prefix="Q", businesses={"b1": {"quote_prefix": "DV", "default_deposit_percent": 0}})
        assert s.for_business("b1").quote_prefix == "DV"
        assert s.for_business("b1").default_deposit_percent == 0
        assert s.for_business("b2").quote_prefix == "Q"

    def test_data_dir_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PROBILLING_DATA_DIR", str(tmp_path))
        assert default_data_dir() == tmp_path
        monkeypatch.delenv("PROBILLING_DATA_DIR")
        assert default_data_dir().name == "data"


class TestNumbering:
    def test_build_number(self):
        at = datetime(2025, 6, 1)
        assert build_number("FAC", 7, at) == "FAC-2025-0007"
        assert build_number("FAC-", 12345, at) == "FAC-2025-12345"

    def test_counters_per_business_and_kind(self):
        numbering = SequenceNumbering(BillingStore.in_memory())
        at = datetime(2025, 1, 1)
        assert numbering.next_number("b1", DocumentKind.QUOTE, at) == "DEV-2025-0001"
        assert numbering.next_number("b1", DocumentKind.QUOTE, at) == "DEV-2025-0002"
        assert numbering.next_number("b1", DocumentKind.INVOICE, at) == "FAC-2025-0001"
        assert numbering.next_number("b2", "QUOTE", at) == "DEV-2025-0001"

    def test_counter_rolls_back_with_transaction(self):
        store = BillingStore.in_memory()
        numbering = SequenceNumbering(store)
        with pytest.raises(RuntimeError):
            with store.atomic():
                numbering.next_number("b1", DocumentKind.INVOICE)
                raise RuntimeError("boom")
        assert numbering.next_number("b1", DocumentKind.INVOICE).endswith("-0001")
