"""Signed webhook delivery for terminal job events."""

from __future__ import annotations

import hashlib
import hmac
import json
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from vidcompose.utils.logging import debug, info, warn

SIGNATURE_HEADER = "X-Webhook-Signature"
BACKOFF_BASE = 1.0
BACKOFF_CAP = 30.0


def sign_payload(body: bytes, secret: str) -> str:
    """``sha256=<hex>`` HMAC of the exact request body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature.strip())


def encode_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def build_event(job: Any) -> dict[str, Any]:
    """``job.completed`` / ``job.failed`` event body for a terminal job."""
    completed = job.state.value == "completed"
    event: dict[str, Any] = {
        "event": "job.completed" if completed else "job.failed",
        "jobId": job.id,
        "status": job.state.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if completed:
        event["result"] = job.result
    else:
        event["error"] = job.error.to_dict() if job.error else None
    return event


class WebhookNotifier:
    """POSTs JSON events with retries. Delivery failures are logged, never raised."""

    def __init__(
        self,
        secret: str = "",
        max_retries: int = 3,
        timeout: float = 10.0,
        user_agent: str = "vidcompose-webhooks/1.0",
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.secret = secret
        self.max_retries = max(1, max_retries)
        self.timeout = timeout
        self.user_agent = user_agent
        self._client = client
        self._sleep = sleep

    @classmethod
    def from_config(cls, cfg: Any, client: httpx.Client | None = None) -> WebhookNotifier:
        return cls(cfg.secret, cfg.max_retries, cfg.timeout, cfg.user_agent, client=client)

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def headers(self, body: bytes, attempt: int) -> dict[str, str]:
        h = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            "X-Webhook-Timestamp": str(int(time.time())),
            "X-Webhook-Attempt": str(attempt),
        }
        if self.secret:
            h[SIGNATURE_HEADER] = sign_payload(body, self.secret)
        return h

    def notify(self, url: str, payload: dict[str, Any]) -> bool:
        """Deliver ``payload``; True on a 2xx response within ``max_retries`` attempts."""
        body = encode_payload(payload)
        for attempt in range(1, self.max_retries + 1):
            try:
                r = self._http().post(url, content=body, headers=self.headers(body, attempt))
                if 200 <= r.status_code < 300:
                    info(f"[webhook] {payload.get('event')} delivered to {url} (attempt {attempt})")
                    return True
                warn(f"[webhook] {url} answered HTTP {r.status_code} (attempt {attempt}/{self.max_retries})")
            except httpx.HTTPError as e:
                warn(f"[webhook] delivery to {url} failed: {e} (attempt {attempt}/{self.max_retries})")
            if attempt < self.max_retries:
                self._sleep(min(BACKOFF_BASE * 2 ** (attempt - 1), BACKOFF_CAP))
        warn(f"[webhook] giving up on {url} after {self.max_retries} attempt(s)")
        return False

    def notify_async(self, url: str, payload: dict[str, Any]) -> threading.Thread:
        t = threading.Thread(target=self.notify, args=(url, payload), name="webhook", daemon=True)
        t.start()
        debug(f"[webhook] dispatching {payload.get('event')} to {url}")
        return t


_dispatch_lock = threading.Lock()


def dispatch_terminal(job: Any, notifier: WebhookNotifier | None, wait: bool = False) -> bool:
    """Send the terminal event for ``job`` once; later calls are no-ops.

    Returns True when a delivery was dispatched by this call.
    """
    payload = job.payload or {}
    url = payload.get("webhook_url") or payload.get("webhookUrl") or payload.get("webhook")
    if notifier is None or not url or not job.state.terminal:
        return False
    with _dispatch_lock:
        if job.webhook_sent:
            return False
        job.webhook_sent = True
    event = build_event(job)
    if wait:
        notifier.notify(url, event)
    else:
        notifier.notify_async(url, event)
    return True
