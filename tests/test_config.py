"""
Tests for matching settings and environment overrides.
"""

import pytest

from ledgermatch.core.config import (
    MatchingSettings,
    OrchestratorSettings,
    ScoringSettings,
    SearchSettings,
    ThresholdDefaults,
    get_settings,
    reset_settings,
)


class TestDefaults:

    def test_default_thresholds_and_weights(self):
        thresholds = ThresholdDefaults()
        assert (thresholds.suggest, thresholds.high_confidence, thresholds.auto_match) == (0.60, 0.72, 0.90)
        assert thresholds.weights == {"amount": 0.40, "text": 0.25, "date": 0.25, "currency": 0.10}
        assert abs(sum(thresholds.weights.values()) - 1.0) < 1e-9

    def test_search_windows_by_document_type(self):
        search = SearchSettings()
        assert search.window_for("expense") == (93, 10)
        assert search.window_for("invoice") == (10, 123)
        assert search.window_for(None) == (60, 30)
        assert search.window_for("credit_note") == (60, 30)

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(ValueError):
            ThresholdDefaults(suggest=0.8, high_confidence=0.7)

    def test_unknown_weight_rejected(self):
        with pytest.raises(ValueError):
            ThresholdDefaults(weights={"amount": 0.5, "colour": 0.5})

    def test_amount_bands_must_be_ordered(self):
        with pytest.raises(ValueError):
            ScoringSettings(amount_tolerance_pct=0.2, amount_falloff_pct=0.15)

    def test_orchestrator_clamps_concurrency(self):
        settings = OrchestratorSettings(max_concurrency=0, max_attempts=0)
        assert settings.max_concurrency == 1
        assert settings.max_attempts == 1


class TestEnvironment:

    def setup_method(self):
        reset_settings()

    def teardown_method(self):
        reset_settings()

    def test_overrides_from_env(self, monkeypatch):
        monkeypatch.setenv("LEDGERMATCH_AUTO_MATCH_THRESHOLD", "0.95")
        monkeypatch.setenv("LEDGERMATCH_MAX_BATCH_SIZE", "20")
        monkeypatch.setenv("LEDGERMATCH_DB_PATH", "/tmp/matching.db")

        settings = get_settings()

        assert settings.thresholds.auto_match == 0.95
        assert settings.orchestrator.max_batch_size == 20
        assert settings.db_path == "/tmp/matching.db"

    def test_bad_values_fall_back_to_defaults(self, monkeypatch):
        monkeypatch.setenv("LEDGERMATCH_SUGGEST_THRESHOLD", "sixty")
        monkeypatch.setenv("LEDGERMATCH_MAX_CONCURRENCY", "")

        settings = MatchingSettings.from_env()

        assert settings.thresholds.suggest == 0.60
        assert settings.orchestrator.max_concurrency == 4

    def test_settings_are_cached_until_reset(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("LEDGERMATCH_MAX_ATTEMPTS", "9")
        assert get_settings() is first

        reset_settings()
        assert get_settings().orchestrator.max_attempts == 9
