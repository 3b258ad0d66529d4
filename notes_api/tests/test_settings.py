import pytest

from notes_api.settings import Settings


def test_settings_invalid_int_falls_back(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "nope")
    monkeypatch.setenv("RATE_LIMIT_SWEEP_SECONDS", "NaN?")
    settings = Settings()

    assert settings.rate_limit_per_minute == 5
    assert settings.rate_limit_sweep_seconds == 60.0


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "7")
    monkeypatch.setenv("RATE_LIMIT_PER_DAY", "70")
    settings = Settings()

    config = settings.rate_limit_config()
    assert config.requests_per_minute == 7
    assert config.requests_per_day == 70


def test_gemini_keys_merge_single_and_list(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "k0")
    monkeypatch.setenv("GEMINI_API_KEYS", "k1, k2,,k0")
    settings = Settings()

    assert settings.gemini_api_keys == ["k1", "k2", "k0"]


def test_non_finite_sweep_interval_fails_fast(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_SWEEP_SECONDS", "nan")
    settings = Settings()

    with pytest.raises(ValueError):
        settings.rate_limit_config()
