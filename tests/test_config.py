import os

import pytest

from config import Config, get_all_settings, get_llm_settings, get_setting, mask_secret
from errors import LLMNotConfiguredError


@pytest.mark.asyncio
async def test_environment_beats_persisted_beats_default(db, monkeypatch):
    assert await get_setting(db, "llm_model") == "gpt-4o-mini"

    await db.execute('set_config_value', key="llm_model", value="stored-model")
    assert await get_setting(db, "llm_model") == "stored-model"

    monkeypatch.setenv("LLM_MODEL", "env-model")
    assert await get_setting(db, "llm_model") == "env-model"


@pytest.mark.asyncio
async def test_no_default_proxy(db):
    assert await get_setting(db, "proxy_url") is None


@pytest.mark.asyncio
async def test_llm_settings_fail_fast_naming_missing_keys(db):
    with pytest.raises(LLMNotConfiguredError) as excinfo:
        await get_llm_settings(db)
    assert "LLM_API_KEY" in excinfo.value.missing
    assert "LLM_BASE_URL" in excinfo.value.missing
    assert str(excinfo.value).startswith("LLM not configured")


@pytest.mark.asyncio
async def test_llm_settings_resolve_from_mixed_sources(db, monkeypatch):
    monkeypatch.setenv("LLM_API_KEY", "sk-test")
    await db.execute('set_config_value', key="llm_base_url", value="https://llm.test/v1")

    settings = await get_llm_settings(db)

    assert settings.api_key == "sk-test"
    assert settings.base_url == "https://llm.test/v1"
    assert settings.model == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_all_settings_report_their_source(db, monkeypatch):
    monkeypatch.setenv("PROXY_URL", "http://proxy.test:3128")
    await db.execute('set_config_value', key="llm_api_key", value="sk-stored")

    settings = await get_all_settings(db)

    assert settings["proxy_url"]["source"] == "env:PROXY_URL"
    assert settings["llm_api_key"] == {"value": "sk-stored", "source": "config"}
    assert settings["llm_model"]["source"] == "default"


def test_invalid_numeric_settings_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("RSS_CONCURRENCY", "zero")
    monkeypatch.setenv("LLM_CONCURRENCY", "0")
    monkeypatch.setenv("LLM_TIMEOUT", "45")

    fresh = Config()

    assert fresh.RSS_CONCURRENCY == 5
    assert fresh.LLM_CONCURRENCY == 1
    assert fresh.LLM_TIMEOUT == 45.0


def test_secrets_file_overrides_environment(tmp_path, monkeypatch):
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text("environment:\n  LLM_MODEL: from-secrets\n  SCRAPER_CONCURRENCY: 4\n")
    monkeypatch.setenv("SECRETS_FILE", str(secrets))
    monkeypatch.setenv("LLM_MODEL", "from-env")
    monkeypatch.setenv("SCRAPER_CONCURRENCY", "2")

    fresh = Config()

    assert os.environ["LLM_MODEL"] == "from-secrets"
    assert fresh.SCRAPER_CONCURRENCY == 4


def test_mask_secret():
    assert mask_secret("sk-1234567890") == "*********7890"
    assert mask_secret(None) == "<unset>"
    assert mask_secret("abc") == "***"
