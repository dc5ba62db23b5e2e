from decimal import Decimal

import pytest
from pydantic import ValidationError

from cleanbook.config import Settings


def _settings(**values) -> Settings:
    values.setdefault("STRIPE_SECRET_KEY", "sk_test_abc")
    values.setdefault("RESEND_API_KEY", "re_abc")
    return Settings(_env_file=None, **values)


def test_commission_rate_bounds():
    assert _settings(PLATFORM_COMMISSION_RATE="0.2").PLATFORM_COMMISSION_RATE == Decimal("0.2")
    with pytest.raises(ValidationError):
        _settings(PLATFORM_COMMISSION_RATE="1.5")
    with pytest.raises(ValidationError):
        _settings(PLATFORM_COMMISSION_RATE="-0.1")


def test_unknown_app_env_rejected():
    with pytest.raises(ValidationError):
        _settings(APP_ENV="prod")


@pytest.mark.parametrize(
    "url",
    ["postgres://u:p@db:5432/cleanbook", "postgresql://u:p@db:5432/cleanbook"],
)
def test_database_url_normalized(url):
    assert _settings(DATABASE_URL=url).DATABASE_URL == "postgresql+asyncpg://u:p@db:5432/cleanbook"


def test_production_refuses_default_database():
    with pytest.raises(ValidationError, match="default development credentials"):
        _settings(APP_ENV="production", STRIPE_SECRET_KEY="sk_live_abc")


def test_production_requires_live_key():
    with pytest.raises(ValidationError, match="live Stripe key"):
        _settings(
            APP_ENV="production",
            DATABASE_URL="postgresql+asyncpg://u:p@db:5432/cleanbook",
            STRIPE_SECRET_KEY="sk_test_abc",
            STRIPE_WEBHOOK_SECRET="whsec_abc",
            ADMIN_API_KEY="admin",
        )


def test_cors_origins_list():
    settings = _settings(CORS_ORIGINS="https://a.example, https://b.example,")
    assert settings.cors_origins_list == ["https://a.example", "https://b.example"]
    assert not settings.is_production
