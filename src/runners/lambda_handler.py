from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from config.logging import setup_logging
from config.settings import load_settings
from config.utils import parse_bool
from core.application.execution import run_cycle

logger = logging.getLogger("flagbot.lambda")


def parse_trigger(event: Mapping[str, Any] | None, default_symbol: str, default_timeframe: str) -> dict[str, Any]:
    """Extract ``symbol``, ``timeframe`` and ``force`` from a direct or API Gateway event."""

    payload: dict[str, Any] = dict(event or {})
    body = payload.get("body")
    if isinstance(body, str) and body.strip():
        try:
            decoded = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("lambda.body.invalid_json")
            decoded = {}
        if isinstance(decoded, Mapping):
            payload.update(decoded)
    elif isinstance(body, Mapping):
        payload.update(body)

    return {
        "symbol": payload.get("symbol") or default_symbol,
        "timeframe": payload.get("timeframe") or payload.get("interval") or default_timeframe,
        "force": parse_bool(payload.get("force"), default=False),
    }


def handler(event=None, context=None):
    """AWS Lambda entry point that delegates to :func:`run_cycle`."""
    settings = load_settings()
    setup_logging(level=settings.LOG_LEVEL, mode=settings.LOG_FORMAT)

    trigger = parse_trigger(event, settings.SYMBOL, settings.TIMEFRAME)
    request_id = getattr(context, "aws_request_id", None)
    logger.info("lambda.start", extra={**trigger, "request_id": request_id})

    result = run_cycle(trigger["symbol"], trigger["timeframe"], trigger["force"])
    status = 200 if result.success else 500
    logger.info(
        "lambda.end",
        extra={"status": result.status.value, "status_code": status, "request_id": request_id},
    )
    return {"statusCode": status, "body": result.to_dict()}
