"""
Analytics event collector client.

Fire-and-forget from the caller's point of view: the settlement engine runs
these after commit and ignores the result.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


def track(event: str, user_id: Optional[int], properties: Dict[str, Any]) -> bool:
    if not settings.analytics_enabled or not settings.analytics_url:
        logger.info("Analytics disabled. Event %s for user %s not sent", event, user_id)
        return True

    payload = {
        "event": event,
        "user_id": user_id,
        "properties": properties,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    with httpx.Client(timeout=5) as client:
        resp = client.post(
            settings.analytics_url,
            headers={"Authorization": f"Bearer {settings.analytics_api_key}"},
            json=payload,
        )
    if resp.status_code < 300:
        return True
    logger.error("Analytics track %s failed: %s %s", event, resp.status_code, resp.text)
    return False
