"""Alert service: operational alerts to Telegram plus a persisted alert log."""

from typing import Optional

import httpx
from sqlalchemy import event
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import PipelineAlert

logger = get_logger("alert_service")

PENDING_ALERTS = "pending_alerts"  # session.info key


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to Telegram.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict

    Returns:
        True if sent successfully
    """
    if not settings.alert_bot_token or not settings.alert_chat_id:
        logger.warning(f"Alert not configured: {level} - {message}", extra={"context": context or {}})
        return False

    emoji = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}

    text = f"{emoji.get(level, '📢')} *{level}*\n\n{message}"

    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"https://api.telegram.org/bot{settings.alert_bot_token}/sendMessage",
                json={"chat_id": settings.alert_chat_id, "text": text, "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for ERROR level alert."""
    return send_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for CRITICAL level alert."""
    return send_alert("CRITICAL", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for WARNING level alert."""
    return send_alert("WARNING", message, context)


def record_alert(
    db: Session,
    *,
    kind: str,
    level: str,
    message: str,
    tenant_id=None,
    context: Optional[dict] = None,
) -> PipelineAlert:
    """Persist an operational alert and queue it for Telegram.

    The row is flushed, not committed: it lands together with the caller's
    transaction so an alert never outlives the state change that raised it.
    The Telegram message goes out from forward_pending_alerts once the caller
    has committed; a rollback drops it.
    """
    payload = {key: str(value) if value is not None else None for key, value in (context or {}).items()}
    alert = PipelineAlert(
        tenant_id=tenant_id,
        kind=kind,
        level=level,
        message=message,
        context=payload,
    )
    db.add(alert)
    db.flush()
    logger.warning(
        "Pipeline alert",
        extra={"context": {"kind": kind, "level": level, "tenant_id": str(tenant_id) if tenant_id else None, **payload}},
    )
    db.info.setdefault(PENDING_ALERTS, []).append((level, message, {"kind": kind, **payload}))
    return alert


def forward_pending_alerts(db: Session) -> int:
    """Send alerts recorded in this session. Blocking: async callers run it in a thread."""
    pending = db.info.pop(PENDING_ALERTS, [])
    for level, message, context in pending:
        send_alert(level, message, context)
    return len(pending)


@event.listens_for(Session, "after_soft_rollback")
def _drop_pending_alerts(session, previous_transaction):
    session.info.pop(PENDING_ALERTS, None)
