"""Tests for configuration loading and validation."""

from dataclasses import replace

import pytest

from tutor_scheduler.config import AppConfig, _safe_float, _safe_int, _validate_config


def _with_model(config: AppConfig, **changes) -> AppConfig:
    return replace(config, model=replace(config.model, **changes))


def _with_matching(config: AppConfig, **changes) -> AppConfig:
    return replace(config, matching=replace(config.matching, **changes))


class TestConfigValidation:
    def test_default_config_passes_validation(self):
        _validate_config(AppConfig())  # should not raise

    def test_invalid_temperature_too_high(self):
        config = _with_model(AppConfig(), reasoning_temperature=3.0)
        with pytest.raises(ValueError, match="REASONING_TEMPERATURE"):
            _validate_config(config)

    def test_invalid_reply_temperature_negative(self):
        config = _with_model(AppConfig(), reply_temperature=-0.5)
        with pytest.raises(ValueError, match="REPLY_TEMPERATURE"):
            _validate_config(config)

    def test_zero_timeout_rejected(self):
        config = _with_model(AppConfig(), embedding_timeout_sec=0)
        with pytest.raises(ValueError, match="EMBEDDING_TIMEOUT_SEC"):
            _validate_config(config)

    def test_zero_reply_timeout_rejected(self):
        config = _with_model(AppConfig(), reply_timeout_sec=0)
        with pytest.raises(ValueError, match="REPLY_TIMEOUT_SEC"):
            _validate_config(config)

    def test_others_k_smaller_than_single_k_rejected(self):
        config = _with_matching(AppConfig(), single_match_top_k=5, others_top_k=3)
        with pytest.raises(ValueError, match="OTHERS_TOP_K"):
            _validate_config(config)

    def test_reasoning_shortlist_capped_at_five(self):
        config = _with_matching(AppConfig(), max_reasoning_candidates=6)
        with pytest.raises(ValueError, match="MAX_REASONING_CANDIDATES"):
            _validate_config(config)

    def test_empty_course_codes_rejected(self):
        config = AppConfig()
        config = replace(config, booking=replace(config.booking, course_codes=()))
        with pytest.raises(ValueError, match="COURSE_CODES"):
            _validate_config(config)


class TestDefaults:
    def test_retrieval_sizes(self):
        config = AppConfig()
        assert config.matching.single_match_top_k == 5
        assert config.matching.others_top_k == 20

    def test_keyword_weights(self):
        matching = AppConfig().matching
        assert (matching.topic_weight, matching.mode_weight, matching.day_weight,
                matching.time_weight) == (10, 5, 3, 2)

    def test_config_is_frozen(self):
        config = AppConfig()
        with pytest.raises(AttributeError):
            config.log_level = "DEBUG"  # type: ignore[misc]


class TestEnvParsing:
    def test_safe_int_reads_env(self, monkeypatch):
        monkeypatch.setenv("TEST_INT_VALUE", "42")
        assert _safe_int("TEST_INT_VALUE", "1") == 42

    def test_safe_int_bad_value(self, monkeypatch):
        monkeypatch.setenv("TEST_INT_VALUE", "forty-two")
        with pytest.raises(ValueError, match="TEST_INT_VALUE"):
            _safe_int("TEST_INT_VALUE", "1")

    def test_safe_float_default(self, monkeypatch):
        monkeypatch.delenv("TEST_FLOAT_VALUE", raising=False)
        assert _safe_float("TEST_FLOAT_VALUE", "1.5") == 1.5
