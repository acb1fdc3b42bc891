from __future__ import annotations

from sentinelkb.config import Settings, get_settings


def test_defaults_embedding_model_and_dim():
    settings = get_settings({"environment": "test"})
    assert settings.embedding_model == "text-embedding-3-small"
    assert settings.embedding_dim == 1536
    assert settings.embedding_backend == "hash"


def test_queue_defaults():
    settings = get_settings({"environment": "test"})
    assert settings.queue_backend == "memory"
    assert settings.worker_count >= 1
    assert settings.health_max_queue_length == 100
    assert settings.retry_delays_tuple == (5.0, 15.0, 30.0)


def test_retry_delays_accept_comma_separated_string():
    settings = Settings(environment="test", retry_delays_seconds="1, 2,3")
    assert settings.retry_delays_tuple == (1.0, 2.0, 3.0)


def test_openai_enabled_only_with_key():
    assert not Settings(environment="test").openai_enabled
    assert Settings(environment="test", openai_api_key="sk-test").openai_enabled


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("SENTINELKB_WORKER_COUNT", "3")
    monkeypatch.setenv("SENTINELKB_DATABASE_URL", "sqlite://")
    settings = Settings()
    assert settings.worker_count == 3
    assert settings.database_url == "sqlite://"
