from __future__ import annotations

from typing import Protocol

import httpx
import structlog

from ..config import settings

log = structlog.get_logger()


class Notifier(Protocol):
    def notify_portfolio_recalculated(self, client_id: str, summary: dict) -> None: ...

    def notify_alert_raised(self, alert: dict) -> None: ...


class LogNotifier:
    """Writes notifications to the structured log only."""

    def notify_portfolio_recalculated(self, client_id: str, summary: dict) -> None:
        log.info("notify_portfolio_recalculated", client_id=client_id, total_value_usd=summary.get("total_value_usd"))

    def notify_alert_raised(self, alert: dict) -> None:
        log.info("notify_alert_raised", alert_id=alert.get("id"), alert_type=alert.get("alert_type"),
                 severity=alert.get("severity"), message=alert.get("message"))


class WebhookNotifier:
    def __init__(self, url: str, timeout: float = 15.0, transport: httpx.BaseTransport | None = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    def _post(self, event: str, payload: dict) -> bool:
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            r = client.post(self.url, json={"event": event, "data": payload})
            if r.status_code >= 300:
                log.warning("webhook_send_failed", notify_event=event, status=r.status_code, body=r.text[:500])
                return False
            return True

    def notify_portfolio_recalculated(self, client_id: str, summary: dict) -> None:
        self._post("portfolio_recalculated", {"client_id": client_id, **summary})

    def notify_alert_raised(self, alert: dict) -> None:
        self._post("alert_raised", alert)


def build_notifier() -> Notifier:
    if settings.notify_webhook_url:
        return WebhookNotifier(settings.notify_webhook_url, timeout=settings.http_timeout_seconds)
    return LogNotifier()

def notify_safely(fn, *args) -> bool:
    """Call a notifier method; a failed notification never fails the caller."""
    try:
        fn(*args)
        return True
    except Exception as exc:
        log.warning("notify_failed", notify_method=getattr(fn, "__name__", str(fn)), err=str(exc), exc_info=True)
        return False
