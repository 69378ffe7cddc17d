"""chat_delivery.py — Delivers dequeued work to the chatbot service and the user.

``message`` items are posted to the chat API and any bot replies are pushed
to the user's connections. ``handoff`` and ``system`` items are pushed
directly. Failures are classified so the Retry Executor only retries what
can succeed later.
"""
from __future__ import annotations

import json
import logging
import socket
import ssl
import time
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

import certifi

from handoff_relay.config import HandoffSettings
from handoff_relay.errors import ErrorKind, HandoffError
from handoff_relay.models import DeliveryReport, PushMessage, QueueMessage
from handoff_relay.push import PushNotifier
from handoff_relay.serialization import _emit_structured_observability, _json_default

logger = logging.getLogger("handoff_relay")

__all__ = ["ChatDeliveryClient"]

_CERT_BUNDLE = certifi.where()
_RETRYABLE_HTTP = {408, 425, 429, 500, 502, 503, 504}


class ChatDeliveryClient:
    def __init__(self, notifier: PushNotifier, settings: HandoffSettings):
        self.notifier = notifier
        self.api_url = settings.chat_api_url.rstrip("/")
        self.api_key = settings.chat_api_key
        self.timeout = settings.chat_api_timeout

    def deliver(self, message: QueueMessage) -> Dict[str, Any]:
        if message.type == "message":
            replies = self._post_to_chat_api(message)
            report = DeliveryReport()
            for reply in replies:
                report.merge(self.notifier.send_to_user(message.user_id, PushMessage(type="MESSAGE", payload=reply)))
            return {"replies": len(replies), "delivered": report.delivered}
        push_type = "HANDOFF_STATUS" if message.type == "handoff" else "MESSAGE"
        report = self.notifier.send_to_user(message.user_id, PushMessage(type=push_type, payload=message.payload))
        if report.attempted and not report.delivered and report.failed:
            raise HandoffError(
                ErrorKind.TRANSIENT_INFRA,
                f"push to user {message.user_id} failed on every connection",
                message_id=message.id,
            )
        return {"replies": 0, "delivered": report.delivered}

    def _post_to_chat_api(self, message: QueueMessage) -> List[Dict[str, Any]]:
        if not self.api_url:
            raise HandoffError(ErrorKind.TRANSIENT_INFRA, "CHAT_API_URL not configured", message_id=message.id)
        body = json.dumps(
            {"messageId": message.id, "userId": message.user_id, "payload": message.payload},
            default=_json_default,
        ).encode("utf-8")
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        req = urllib.request.Request(url=f"{self.api_url}/messages", method="POST", data=body, headers=headers)
        context = ssl.create_default_context(cafile=_CERT_BUNDLE)
        started = time.perf_counter()
        error_code: Optional[str] = None
        try:
            with urllib.request.urlopen(req, timeout=self.timeout, context=context) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            error_code = f"http_{exc.code}"
            detail = exc.read().decode("utf-8", errors="replace")[:400]
            kind = ErrorKind.TRANSIENT_INFRA if exc.code in _RETRYABLE_HTTP else ErrorKind.VALIDATION
            raise HandoffError(
                kind,
                f"chat API returned {error_code}: {detail or exc.reason}",
                code="UPSTREAM_ERROR" if kind is ErrorKind.TRANSIENT_INFRA else "CHAT_REJECTED",
                message_id=message.id,
            ) from exc
        except (urllib.error.URLError, socket.timeout, TimeoutError) as exc:
            error_code = "url_error"
            raise HandoffError(
                ErrorKind.TRANSIENT_INFRA,
                f"chat API unreachable: {getattr(exc, 'reason', exc)}",
                message_id=message.id,
            ) from exc
        finally:
            _emit_structured_observability(
                component="chat_delivery",
                event="chat_api_post",
                latency_ms=int((time.perf_counter() - started) * 1000),
                error_code=error_code,
                extra={"message_id": message.id},
            )

        try:
            parsed = json.loads(raw) if raw else {}
        except json.JSONDecodeError as exc:
            raise HandoffError(ErrorKind.TRANSIENT_INFRA, f"chat API returned invalid JSON: {exc}") from exc
        replies = parsed.get("responses") if isinstance(parsed, dict) else None
        return [r for r in (replies or []) if isinstance(r, dict)]
