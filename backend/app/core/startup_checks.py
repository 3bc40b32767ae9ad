from __future__ import annotations

from app.core.config import Settings


def _is_production(source: Settings) -> bool:
    return (source.environment or "").strip().lower() in {"prod", "production"}


def _looks_like_localhost(url: str | None) -> bool:
    value = (url or "").strip().lower()
    return "localhost" in value or "127.0.0.1" in value


def _append_if(problems: list[str], *, condition: bool, message: str) -> None:
    if condition:
        problems.append(message)


def _validate_core_settings(source: Settings, problems: list[str]) -> None:
    secret = (source.secret_key or "").strip()
    _append_if(
        problems,
        condition=secret in {"", "dev-secret-key"} or len(secret) < 32,
        message="SECRET_KEY must be set to a strong random value (not the dev default).",
    )
    _append_if(
        problems,
        condition=_looks_like_localhost(source.database_url),
        message="DATABASE_URL must not point at localhost in production.",
    )
    _append_if(
        problems,
        condition=source.database_url.startswith("sqlite"),
        message="DATABASE_URL must not use SQLite in production.",
    )
    _append_if(
        problems,
        condition=int(source.coupon_apply_max_attempts or 0) < 1,
        message="COUPON_APPLY_MAX_ATTEMPTS must be at least 1.",
    )


def _validate_audit_settings(source: Settings, problems: list[str]) -> None:
    _append_if(
        problems,
        condition=source.audit_hash_chain_enabled and not (source.audit_hash_chain_secret or "").strip(),
        message="AUDIT_HASH_CHAIN_SECRET must be set when AUDIT_HASH_CHAIN_ENABLED=1.",
    )


def _validate_email_settings(source: Settings, problems: list[str]) -> None:
    if not source.email_enabled:
        return
    _append_if(
        problems,
        condition=not (source.smtp_host or "").strip(),
        message="SMTP_HOST must be set when EMAIL_ENABLED=1.",
    )
    _append_if(
        problems,
        condition=not (source.smtp_from_email or "").strip(),
        message="SMTP_FROM_EMAIL must be set when EMAIL_ENABLED=1.",
    )
    _append_if(
        problems,
        condition=not (source.support_email or "").strip(),
        message="SUPPORT_EMAIL must be set when EMAIL_ENABLED=1.",
    )


def validate_production_settings(source: Settings) -> None:
    """Fail fast on insecure defaults when running in production."""
    if not _is_production(source):
        return

    problems: list[str] = []
    _validate_core_settings(source, problems)
    _validate_audit_settings(source, problems)
    _validate_email_settings(source, problems)

    if problems:
        raise RuntimeError("Production configuration checks failed:\n- " + "\n- ".join(problems))
