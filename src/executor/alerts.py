"""
Webhook Alerts — push operator-facing events to HTTP endpoints.

Triggers:
  * INCIDENT_RAISED   — unwind exhausted, one-sided exposure left open
  * UNWIND_TRIGGERED  — leg B failed after leg A confirmed
  * LEG_FAILURE       — leg A failed, nothing at risk
  * CHAIN_*           — a chain went DOWN / DEGRADED / back to HEALTHY
  * BOT_TOGGLED       — execution enabled or disabled by an operator

Each alert is one JSON POST per configured URL, delivered from a
background thread with exponential back-off.  When ``WEBHOOK_SECRET`` is
set the body is signed with HMAC-SHA256 in the ``X-Arb-Signature`` header.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from queue import Empty, Full, Queue
from typing import Callable, Deque, Dict, Optional, Tuple

import requests

from config import get_env, get_float, get_int, get_list

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Arb-Signature"


class AlertLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType(Enum):
    INCIDENT_RAISED = auto()
    UNWIND_TRIGGERED = auto()
    LEG_FAILURE = auto()
    CHAIN_DOWN = auto()
    CHAIN_DEGRADED = auto()
    CHAIN_RECOVERED = auto()
    BOT_TOGGLED = auto()
    CUSTOM = auto()


# Health status (as reported by HealthTracker) → alert type and level
_HEALTH_ALERTS: Dict[str, Tuple[AlertType, AlertLevel]] = {
    "DOWN": (AlertType.CHAIN_DOWN, AlertLevel.CRITICAL),
    "DEGRADED": (AlertType.CHAIN_DEGRADED, AlertLevel.WARNING),
    "HEALTHY": (AlertType.CHAIN_RECOVERED, AlertLevel.INFO),
}


@dataclass
class Alert:
    alert_type: AlertType
    level: AlertLevel
    chain: Optional[str]
    message: str
    details: dict = field(default_factory=dict)
    attempt_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def cooldown_key(self) -> Tuple[str, Optional[str]]:
        return (self.alert_type.name, self.chain)

    def to_payload(self) -> dict:
        return {
            "source": "xchain-arb",
            "type": self.alert_type.name,
            "level": self.level.value,
            "chain": self.chain,
            "attempt_id": self.attempt_id,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }


@dataclass
class WebhookConfig:
    urls: list[str] = field(default_factory=list)
    timeout_seconds: float = 5.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    enabled: bool = True
    # Same type + chain is sent at most once per window; CRITICAL bypasses it.
    cooldown_seconds: float = 60.0
    secret: Optional[str] = None
    queue_size: int = 500

    @classmethod
    def from_env(cls) -> "WebhookConfig":
        urls = get_list("WEBHOOK_URLS")
        return cls(
            urls=urls,
            timeout_seconds=get_float("WEBHOOK_TIMEOUT", 5.0),
            max_retries=get_int("WEBHOOK_MAX_RETRIES", 3),
            retry_base_delay=get_float("WEBHOOK_RETRY_DELAY", 1.0),
            enabled=bool(urls),
            cooldown_seconds=get_float("WEBHOOK_COOLDOWN", 60.0),
            secret=get_env("WEBHOOK_SECRET") or None,
        )

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.urls)


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookAlerter:
    """
    Fire-and-forget alert sink.

    ``send`` only enqueues; a daemon thread does the HTTP work, so the
    coordinator and the health listeners never wait on a webhook::

        alerter = WebhookAlerter(WebhookConfig.from_env())
        alerter.start()
        alerter.on_health_change("blast", "HEALTHY", "DOWN")
        alerter.stop()
    """

    def __init__(
        self,
        config: Optional[WebhookConfig] = None,
        clock: Callable[[], float] = time.time,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or WebhookConfig()
        self._clock = clock
        self._session = session
        self._queue: Queue[Alert] = Queue(maxsize=self.config.queue_size)
        self._worker: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._last_sent: Dict[Tuple[str, Optional[str]], float] = {}
        self._pending = 0
        self._counts = {"sent": 0, "failed": 0, "throttled": 0, "dropped": 0}
        self._recent: Deque[dict] = deque(maxlen=100)

    # ── lifecycle ──────────────────────────────────────────────

    def start(self) -> None:
        if not self.config.active:
            logger.info("Webhook alerts off (no WEBHOOK_URLS)")
            return
        if self._worker is not None and self._worker.is_alive():
            return
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"Content-Type": "application/json"})
        self._stop_event.clear()
        self._worker = threading.Thread(
            target=self._run, daemon=True, name="webhook-alerter"
        )
        self._worker.start()
        logger.info("Webhook alerter started: %d endpoint(s)", len(self.config.urls))

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker after it drains whatever is already queued."""
        self._stop_event.set()
        if self._worker is not None and self._worker.is_alive():
            self._worker.join(timeout=timeout)
        self._worker = None

    def flush(self, timeout: float = 5.0) -> bool:
        """Block until every queued alert was attempted. False on timeout."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                if self._pending == 0:
                    return True
            time.sleep(0.01)
        return False

    # ── public API ─────────────────────────────────────────────

    def send(self, alert: Alert) -> bool:
        """Queue ``alert``. False when alerts are off, throttled or the queue is full."""
        if not self.config.active:
            return False

        now = self._clock()
        key = alert.cooldown_key
        with self._lock:
            last = self._last_sent.get(key)
            if (
                alert.level != AlertLevel.CRITICAL
                and last is not None
                and now - last < self.config.cooldown_seconds
            ):
                self._counts["throttled"] += 1
                logger.debug("Alert %s/%s throttled", key[0], key[1])
                return False
            try:
                self._queue.put_nowait(alert)
            except Full:
                self._counts["dropped"] += 1
                logger.warning("Alert queue full, dropping %s", alert.alert_type.name)
                return False
            self._pending += 1
            self._last_sent[key] = now
        return True

    # ── event helpers ──────────────────────────────────────────

    def on_incident(self, attempt_id: str, chain: str, reason: str, details: dict) -> None:
        self.send(
            Alert(
                alert_type=AlertType.INCIDENT_RAISED,
                level=AlertLevel.CRITICAL,
                chain=chain,
                message=f"INCIDENT on attempt {attempt_id}: {reason}. Execution halted.",
                details=details,
                attempt_id=attempt_id,
            )
        )

    def on_leg_failure(
        self,
        chain: str,
        leg: str,
        error: str,
        unwinding: bool,
        attempt_id: Optional[str] = None,
    ) -> None:
        if unwinding:
            alert_type, level = AlertType.UNWIND_TRIGGERED, AlertLevel.CRITICAL
            message = f"Leg {leg} failed on {chain} ({error}); unwinding leg A"
        else:
            alert_type, level = AlertType.LEG_FAILURE, AlertLevel.WARNING
            message = f"Leg {leg} failed on {chain} ({error}); no exposure"
        self.send(
            Alert(
                alert_type=alert_type,
                level=level,
                chain=chain,
                message=message,
                details={"leg": leg, "unwinding": unwinding},
                attempt_id=attempt_id,
            )
        )

    def on_health_change(self, chain: str, old: str, new: str) -> None:
        alert_type, level = _HEALTH_ALERTS.get(new, (AlertType.CUSTOM, AlertLevel.INFO))
        self.send(
            Alert(
                alert_type=alert_type,
                level=level,
                chain=chain,
                message=f"{chain} health {old} → {new}",
                details={"old": old, "new": new},
            )
        )

    def on_toggle(self, enabled: bool, source: str) -> None:
        self.send(
            Alert(
                alert_type=AlertType.BOT_TOGGLED,
                level=AlertLevel.WARNING if not enabled else AlertLevel.INFO,
                chain=None,
                message=f"Execution {'ENABLED' if enabled else 'DISABLED'} by {source}",
                details={"enabled": enabled, "source": source},
            )
        )

    @property
    def stats(self) -> dict:
        with self._lock:
            counts = dict(self._counts)
            recent = list(self._recent)[-10:]
        return {
            "active": self.config.active,
            "endpoints": len(self.config.urls),
            "queued": self._queue.qsize(),
            "recent": recent,
            **counts,
        }

    # ── worker ─────────────────────────────────────────────────

    def _run(self) -> None:
        while True:
            try:
                alert = self._queue.get(timeout=0.2)
            except Empty:
                if self._stop_event.is_set():
                    return
                continue
            try:
                self._deliver(alert)
            finally:
                with self._lock:
                    self._pending -= 1

    def _deliver(self, alert: Alert) -> None:
        body = json.dumps(alert.to_payload(), default=str).encode()
        headers = {"Content-Type": "application/json"}
        if self.config.secret:
            headers[SIGNATURE_HEADER] = sign_payload(self.config.secret, body)

        for url in self.config.urls:
            ok = self._post(url, body, headers)
            with self._lock:
                self._counts["sent" if ok else "failed"] += 1
                self._recent.append(
                    {
                        "type": alert.alert_type.name,
                        "chain": alert.chain,
                        "url": url,
                        "success": ok,
                        "ts": self._clock(),
                    }
                )

    def _post(self, url: str, body: bytes, headers: dict) -> bool:
        session = self._session or requests
        tries = 1 + max(0, self.config.max_retries)
        for n in range(tries):
            try:
                resp = session.post(
                    url, data=body, headers=headers, timeout=self.config.timeout_seconds
                )
            except requests.RequestException as exc:
                logger.warning("Webhook %s try %d/%d failed: %s", url, n + 1, tries, exc)
            else:
                if resp.status_code < 400:
                    logger.debug("Webhook delivered to %s", url)
                    return True
                logger.warning(
                    "Webhook %s try %d/%d returned HTTP %d", url, n + 1, tries, resp.status_code
                )
            if n + 1 < tries:
                time.sleep(self.config.retry_base_delay * (2**n))

        logger.error("Webhook delivery to %s gave up after %d tries", url, tries)
        return False
