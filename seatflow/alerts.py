"""Integrity alerts: logged, counted and pushed onto a Redis list the back office drains."""
import json
import logging
from datetime import datetime, timezone

import redis

from seatflow import config
from seatflow.metrics import alerts_total

logger = logging.getLogger(__name__)

ALERTS_KEY = "ops:alerts"

r = redis.Redis(
    host=config.REDIS_HOST,
    port=config.REDIS_PORT,
    db=0,
    decode_responses=True
)


def raise_alert(kind: str, **details) -> dict:
    alert = {
        "kind": kind,
        "raised_at": datetime.now(timezone.utc).isoformat(),
        **details,
    }

    logger.error(f"Operational alert {kind}: {details}")
    alerts_total.labels(kind=kind).inc()

    try:
        r.lpush(ALERTS_KEY, json.dumps(alert, default=str))
    except redis.exceptions.RedisError as e:
        # The log line above is the record of last resort
        logger.error(f"Could not queue alert {kind}: {e}")

    return alert
