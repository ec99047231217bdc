from logbook import openai_client as oc
from logbook.config import get_settings


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("USE_OFFLINE_MODEL", "yes")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("CORS_ORIGINS", "http://a.test, ,http://b.test")
    monkeypatch.setenv("TRANSCRIBE_TIMEOUT_SECS", "0.2")
    settings = get_settings()
    assert settings.use_offline_model is True
    assert settings.log_level == "DEBUG"
    assert settings.cors_origins == ["http://a.test", "http://b.test"]
    assert settings.transcribe_timeout_secs == 1.0


def test_defaults():
    settings = get_settings()
    assert settings.use_offline_model is False
    assert settings.access_token_expire_minutes == 60


def test_offline_flag_comes_from_settings(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert oc.ai_available() is True
    monkeypatch.setenv("USE_OFFLINE_MODEL", "1")
    get_settings.cache_clear()
    assert oc.ai_available() is False
