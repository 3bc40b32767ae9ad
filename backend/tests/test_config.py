import pytest

from app.core.config import AuditPolicy, ContactPolicy, CouponPolicy, Settings
from app.core.startup_checks import validate_production_settings


def test_policies_are_projected_from_settings() -> None:
    source = Settings(
        coupon_apply_max_attempts=0,
        audit_hash_chain_enabled=True,
        secret_key="k" * 40,
        email_enabled=True,
        support_email="help@shop.test",
        smtp_from_email="no-reply@shop.test",
    )

    assert CouponPolicy.from_settings(source).max_attempts == 1
    audit = AuditPolicy.from_settings(source)
    assert audit.hash_chain_enabled is True
    assert audit.hash_chain_secret == "k" * 40
    contact = ContactPolicy.from_settings(source)
    assert contact.support_email == "help@shop.test"
    assert contact.email.enabled is True
    assert contact.email.from_email == "no-reply@shop.test"


def test_production_checks_are_skipped_outside_production() -> None:
    validate_production_settings(Settings(environment="local"))


def test_production_checks_reject_dev_defaults() -> None:
    with pytest.raises(RuntimeError) as exc:
        validate_production_settings(
            Settings(environment="production", database_url="sqlite+aiosqlite:///:memory:", email_enabled=True)
        )
    message = str(exc.value)
    assert "SECRET_KEY" in message
    assert "SQLite" in message
    assert "SUPPORT_EMAIL" in message


def test_production_checks_accept_hardened_settings() -> None:
    validate_production_settings(
        Settings(
            environment="production",
            secret_key="s" * 48,
            database_url="postgresql+asyncpg://app:pw@db.internal:5432/storefront",
            audit_hash_chain_enabled=True,
            audit_hash_chain_secret="chain-secret",
        )
    )
