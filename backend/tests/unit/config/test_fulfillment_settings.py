from __future__ import annotations

from datetime import time

import pytest
from pydantic import ValidationError

from shared.config.app_config import AppConfig
from shared.config.settings import (
    ApplicationSettings,
    DatabaseSettings,
    RedisSettings,
    RetrySettings,
    SessionSettings,
)


@pytest.mark.unit
def test_default_policy_knobs():
    session = SessionSettings()
    retry = RetrySettings()

    assert session.session_window_size == 7
    assert session.session_low_water_mark == 3
    assert session.session_sweep_interval_seconds == 21600
    assert session.excluded_weekdays == frozenset()
    assert session.session_default_time_slot == time(16, 0)
    assert (retry.purchase_max_attempts, retry.allocation_max_attempts) == (3, 5)
    assert (retry.session_max_attempts, retry.cache_max_attempts) == (3, 3)


@pytest.mark.unit
def test_excluded_weekdays_from_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SESSION_EXCLUDED_WEEKDAYS", "6, 5")

    session = SessionSettings()

    assert session.session_excluded_weekdays == "5,6"
    assert session.excluded_weekdays == frozenset({5, 6})


@pytest.mark.unit
@pytest.mark.parametrize("raw", ["7", "0,1,2,3,4,5,6", "monday"])
def test_excluded_weekdays_rejects_invalid_values(raw: str):
    with pytest.raises(ValidationError):
        SessionSettings(session_excluded_weekdays=raw)


@pytest.mark.unit
def test_postgres_url_prefers_full_dsn(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("POSTGRES_URL", raising=False)
    parts = DatabaseSettings(postgres_host="db", postgres_port=5433, postgres_user="u", postgres_password="p", postgres_db="d")
    assert parts.postgres_url == "postgresql://u:p@db:5433/d"

    monkeypatch.setenv("POSTGRES_URL", "postgresql://x:y@z:1/w")
    assert DatabaseSettings().postgres_url == "postgresql://x:y@z:1/w"


@pytest.mark.unit
def test_redis_url_with_password(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("REDIS_URL", raising=False)

    redis = RedisSettings(redis_host="cache", redis_port=6390, redis_password="secret", redis_db=2)

    assert redis.redis_url == "redis://:secret@cache:6390/2"


@pytest.mark.unit
def test_application_settings_nest_topic_overrides(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PURCHASE_CREATED_TOPIC", "purchase-created-v2")

    settings = ApplicationSettings()

    assert settings.kafka.purchase_created_topic == "purchase-created-v2"
    assert settings.kafka.dead_letter_topic == AppConfig.DEAD_LETTER_TOPIC


@pytest.mark.unit
def test_app_config_cache_and_lock_keys():
    assert AppConfig.get_student_cache_keys("S1") == ["home:S1", "learning:S1"]
    assert AppConfig.get_purchase_lock_key("S1", "C1") == "purchase:S1:C1"
