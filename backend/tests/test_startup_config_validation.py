from __future__ import annotations

import pytest

from app.core.config import Settings


def _settings(**overrides) -> Settings:
    values = {
        "database_url": "sqlite://",
        "supabase_jwt_secret": "secret",
        "stripe_secret_key": "",
        "stripe_webhook_secret": "",
    }
    values.update(overrides)
    return Settings(**values)


def test_valid_configuration_has_no_errors(monkeypatch):
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    assert _settings().validate_required_config() == []


def test_missing_database_and_jwt_settings(monkeypatch):
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    errors = _settings(database_url="", supabase_jwt_secret="", supabase_url="").validate_required_config()
    assert "DATABASE_URL is not set" in errors
    assert any("SUPABASE_JWT_SECRET" in error for error in errors)


def test_stripe_key_requires_webhook_secret(monkeypatch):
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    errors = _settings(stripe_secret_key="sk_test_1").validate_required_config()
    assert errors == ["STRIPE_WEBHOOK_SECRET is required when STRIPE_SECRET_KEY is set"]

    assert _settings(stripe_secret_key="sk_test_1", stripe_webhook_secret="whsec_1").validate_required_config() == []


def test_insecure_webhooks_rejected_in_production(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    errors = _settings(allow_insecure_webhooks=True).validate_required_config()
    assert "ALLOW_INSECURE_WEBHOOKS must be false in production" in errors


@pytest.mark.asyncio
async def test_startup_fails_fast_in_production(monkeypatch):
    from app import main as app_main

    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setattr(type(app_main.settings), "validate_required_config", lambda _self: ["DATABASE_URL is not set"])

    with pytest.raises(RuntimeError, match="Configuration validation failed in production environment"):
        await app_main._startup_jobs()


@pytest.mark.asyncio
async def test_startup_only_warns_outside_production(monkeypatch, caplog):
    from app import main as app_main

    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setattr(type(app_main.settings), "validate_required_config", lambda _self: ["DATABASE_URL is not set"])

    await app_main._startup_jobs()
    assert "Configuration problem: DATABASE_URL is not set" in caplog.text
