from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger("recruit_billing.external")


def _format_meta(meta: dict[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in meta.items() if value is not None)


def log_external_api(service: str, operation: str, duration_ms: int, success: bool, **meta: Any) -> None:
    level = logging.INFO if success else logging.WARNING
    logger.log(
        level,
        "external_api service=%s operation=%s duration_ms=%s success=%s %s",
        service,
        operation,
        duration_ms,
        success,
        _format_meta(meta),
    )


def log_performance(operation: str, duration_ms: int, **meta: Any) -> None:
    logger.info("performance operation=%s duration_ms=%s %s", operation, duration_ms, _format_meta(meta))


def log_error(exc: BaseException, **context: Any) -> None:
    logger.error(
        "error type=%s message=%s %s",
        type(exc).__name__,
        exc,
        _format_meta(context),
        exc_info=exc,
    )
