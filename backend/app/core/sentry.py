from __future__ import annotations

import logging

from app.core.config import Settings

logger = logging.getLogger(__name__)


def init_sentry(source: Settings) -> bool:
    if not source.sentry_dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=source.sentry_dsn,
        environment=source.environment,
        release=source.app_version,
        traces_sample_rate=source.sentry_traces_sample_rate,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        attach_stacktrace=True,
        send_default_pii=False,
    )
    logger.info("Sentry initialised", extra={"environment": source.environment})
    return True
