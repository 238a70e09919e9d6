import pytest

import main


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for key in [
        "SND_DB_PATH", "SND_HOST", "SND_PORT", "SND_API_TOKEN", "SND_SCHEDULER_ACTIVE", "SND_TIMEZONE",
        "SND_TICK_INTERVAL", "SND_BATCH_SIZE", "SND_DISPATCH_CONCURRENCY", "SND_DELIVERY_TIMEOUT",
        "SND_MAX_ATTEMPTS", "SND_RETRY_DELAYS", "SND_GATEWAY_URL", "SND_GATEWAY_TOKEN",
        "SND_ITEM_RETENTION_DAYS", "SND_LOG_RETENTION_DAYS", "SND_TEST_MODE", "SND_LOG_DELIVERY_ACTIVITY",
    ]:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("SND_CONFIG", str(tmp_path / "missing.ini"))
    return monkeypatch


def test_defaults(clean_env):
    settings = main.load_settings()
    assert settings["db_path"] == "/data/send_scheduler.db"
    assert settings["http_port"] == 8000
    assert settings["api_token"] is None
    assert settings["scheduler_active"] is True
    assert settings["timezone"] == "Europe/Rome"
    assert settings["tick_interval"] == 60.0
    assert settings["max_attempts"] == 5
    assert settings["retry_delays"] is None
    assert settings["item_retention_days"] == 0


def test_environment_overrides(clean_env):
    clean_env.setenv("SND_API_TOKEN", "  secret  ")
    clean_env.setenv("SND_GATEWAY_TOKEN", "   ")
    clean_env.setenv("SND_RETRY_DELAYS", "30, 60,120")
    clean_env.setenv("SND_SCHEDULER_ACTIVE", "no")
    clean_env.setenv("SND_MAX_ATTEMPTS", "3")

    settings = main.load_settings()

    assert settings["api_token"] == "secret"
    assert settings["gateway_token"] is None
    assert settings["retry_delays"] == [30, 60, 120]
    assert settings["scheduler_active"] is False
    assert settings["max_attempts"] == 3


def test_config_file_takes_precedence(clean_env, tmp_path):
    config = tmp_path / "config.ini"
    config.write_text(
        "[storage]\ndb_path = ~/sched.db\n"
        "[dispatch]\nbatch_size = 10\ndelivery_timeout_seconds = 2.5\ntest_mode = yes\n"
        "[gateway]\nurl = http://gateway:3000\n"
        "[retention]\nitem_days = 14\n"
    )
    clean_env.setenv("SND_CONFIG", str(config))
    clean_env.setenv("SND_BATCH_SIZE", "99")

    settings = main.load_settings()

    assert settings["db_path"].endswith("sched.db")
    assert not settings["db_path"].startswith("~")
    assert settings["batch_size"] == 10
    assert settings["delivery_timeout"] == 2.5
    assert settings["test_mode"] is True
    assert settings["gateway_url"] == "http://gateway:3000"
    assert settings["item_retention_days"] == 14


def test_build_service(clean_env, tmp_path):
    clean_env.setenv("SND_DB_PATH", str(tmp_path / "svc.db"))
    clean_env.setenv("SND_MAX_ATTEMPTS", "2")
    clean_env.setenv("SND_RETRY_DELAYS", "5,10")
    clean_env.setenv("SND_GATEWAY_URL", "http://gateway:3000")

    service = main.build_service(main.load_settings())

    assert service.persistence.db_path == str(tmp_path / "svc.db")
    assert service.retry_policy.max_attempts == 2
    assert service.retry_policy.delays == (5, 10)
    assert service.transport.gateway_url == "http://gateway:3000"
    assert service._active is True
