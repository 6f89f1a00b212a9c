"""
Prometheus metrics and the operator status API.

Metrics are plain Python objects rendered in the text exposition format,
so no ``prometheus_client`` dependency is needed.  One daemon-thread
``http.server`` serves both the scrape endpoint and a small JSON API:

  GET  /metrics               Prometheus text
  GET  /health                liveness + per-chain health summary
  GET  /api/prices            latest quote per chain and the current gap
  GET  /api/status            enabled flag, attempt state, incident, health
  POST /api/toggle            flip, or set with ``{"enabled": bool}``
  POST /api/incident/clear    operator acknowledgement of an incident

Metric names (all prefixed ``xarb_``):

  counters    opportunities_total{buy_chain,sell_chain}, attempts_total{state},
              unwinds_total{chain,success}, incidents_total
  gauges      price{chain}, price_difference_pct, chain_health{chain},
              enabled, incident_active, realized_pnl_total
  histograms  leg_latency_ms{chain,leg}
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

LabelKey = Tuple[Tuple[str, str], ...]


def _escape(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _render_labels(key: LabelKey, extra: Optional[Tuple[str, str]] = None) -> str:
    pairs = list(key) + ([extra] if extra else [])
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{_escape(v)}"' for k, v in pairs) + "}"


# ── Metric primitives ────────────────────────────────────────────


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help_text: str):
        self.name = name
        self.help = help_text
        self._lock = threading.Lock()

    @staticmethod
    def _key(labels: Dict[str, Any]) -> LabelKey:
        return tuple(sorted((k, str(v)) for k, v in labels.items()))

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {self.help}", f"# TYPE {self.name} {self.kind}"]

    def collect(self) -> list[str]:
        raise NotImplementedError


class Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, help_text: str):
        super().__init__(name, help_text)
        self._values: Dict[LabelKey, float] = {}

    def inc(self, amount: float = 1.0, **labels) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def get(self, **labels) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def collect(self) -> list[str]:
        lines = self._header()
        with self._lock:
            for key, value in sorted(self._values.items()):
                lines.append(f"{self.name}{_render_labels(key)} {value}")
        return lines


class Gauge(_Metric):
    kind = "gauge"

    def __init__(self, name: str, help_text: str):
        super().__init__(name, help_text)
        self._values: Dict[LabelKey, float] = {}

    def set(self, value: float, **labels) -> None:
        with self._lock:
            self._values[self._key(labels)] = float(value)

    def get(self, **labels) -> Optional[float]:
        with self._lock:
            return self._values.get(self._key(labels))

    def collect(self) -> list[str]:
        lines = self._header()
        with self._lock:
            for key, value in sorted(self._values.items()):
                lines.append(f"{self.name}{_render_labels(key)} {value}")
        return lines


@dataclass
class _Series:
    bucket_counts: list[int]
    count: int = 0
    total: float = 0.0


class Histogram(_Metric):
    """Cumulative buckets plus ``_sum`` and ``_count`` per label set."""

    kind = "histogram"
    # Leg latencies in ms: a fast L2 confirms in well under a second,
    # a congested L1 can take a minute.
    DEFAULT_BUCKETS = (50, 250, 1000, 2500, 5000, 15000, 30000, 60000)

    def __init__(self, name: str, help_text: str, buckets: tuple = DEFAULT_BUCKETS):
        super().__init__(name, help_text)
        self.buckets = tuple(sorted(buckets))
        self._series: Dict[LabelKey, _Series] = {}

    def observe(self, value: float, **labels) -> None:
        key = self._key(labels)
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = self._series[key] = _Series([0] * len(self.buckets))
            series.count += 1
            series.total += value
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    series.bucket_counts[i] += 1

    def collect(self) -> list[str]:
        lines = self._header()
        with self._lock:
            for key, series in sorted(self._series.items()):
                for bound, n in zip(self.buckets, series.bucket_counts):
                    lines.append(
                        f"{self.name}_bucket{_render_labels(key, ('le', str(bound)))} {n}"
                    )
                lines.append(
                    f"{self.name}_bucket{_render_labels(key, ('le', '+Inf'))} {series.count}"
                )
                lines.append(f"{self.name}_sum{_render_labels(key)} {series.total}")
                lines.append(f"{self.name}_count{_render_labels(key)} {series.count}")
        return lines


# ── Registry ─────────────────────────────────────────────────────


HEALTH_GAUGE_VALUES = {"HEALTHY": 0.0, "DEGRADED": 1.0, "DOWN": 2.0}


@dataclass
class MetricsRegistry:
    opportunities_total: Counter = field(
        default_factory=lambda: Counter(
            "xarb_opportunities_total", "Net-profitable opportunities emitted"
        )
    )
    attempts_total: Counter = field(
        default_factory=lambda: Counter(
            "xarb_attempts_total", "Execution attempts by terminal state"
        )
    )
    unwinds_total: Counter = field(
        default_factory=lambda: Counter("xarb_unwinds_total", "Unwind tries by outcome")
    )
    incidents_total: Counter = field(
        default_factory=lambda: Counter(
            "xarb_incidents_total", "Incidents raised by exhausted unwinds"
        )
    )
    price: Gauge = field(
        default_factory=lambda: Gauge("xarb_price", "Last computed spot price per chain")
    )
    price_difference_pct: Gauge = field(
        default_factory=lambda: Gauge(
            "xarb_price_difference_pct", "Last observed cross-chain gap in percent"
        )
    )
    chain_health: Gauge = field(
        default_factory=lambda: Gauge(
            "xarb_chain_health", "Chain health (0=healthy, 1=degraded, 2=down)"
        )
    )
    enabled: Gauge = field(
        default_factory=lambda: Gauge("xarb_enabled", "1 when execution is enabled")
    )
    incident_active: Gauge = field(
        default_factory=lambda: Gauge(
            "xarb_incident_active", "1 while an incident blocks execution"
        )
    )
    realized_pnl: Gauge = field(
        default_factory=lambda: Gauge(
            "xarb_realized_pnl_total", "Cumulative realized PnL in quote units"
        )
    )
    leg_latency: Histogram = field(
        default_factory=lambda: Histogram(
            "xarb_leg_latency_ms", "Leg submit-to-confirmation latency in ms"
        )
    )

    def metrics(self) -> list[_Metric]:
        return [v for v in vars(self).values() if isinstance(v, _Metric)]

    def set_chain_health(self, chain: str, status: str) -> None:
        self.chain_health.set(HEALTH_GAUGE_VALUES.get(status, 2.0), chain=chain)

    def collect_all(self) -> str:
        blocks = ["\n".join(metric.collect()) for metric in self.metrics()]
        return "\n\n".join(blocks) + "\n"


# ── HTTP server ──────────────────────────────────────────────────


class StatusProvider(Protocol):
    def latest_prices(self) -> dict: ...

    def status(self) -> dict: ...

    def toggle(self) -> bool: ...

    def set_enabled(self, enabled: bool, source: str = "operator") -> None: ...

    def is_enabled(self) -> bool: ...

    def clear_incident(self, operator: str = "operator") -> bool: ...


class _MetricsHandler(BaseHTTPRequestHandler):
    registry: Optional[MetricsRegistry] = None
    provider: Optional[StatusProvider] = None

    # ── GET ──

    def do_GET(self) -> None:
        routes: Dict[str, Callable[[], None]] = {
            "/metrics": self._get_metrics,
            "/health": self._get_health,
        }
        if self.provider is not None:
            routes["/api/prices"] = lambda: self._send_json(
                200, self.provider.latest_prices()
            )
            routes["/api/status"] = lambda: self._send_json(200, self.provider.status())
        self._dispatch(routes)

    def _get_metrics(self) -> None:
        body = (self.registry or MetricsRegistry()).collect_all().encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _get_health(self) -> None:
        payload: Dict[str, Any] = {"status": "ok"}
        if self.provider is not None:
            status = self.provider.status()
            payload["enabled"] = status.get("enabled")
            payload["incident"] = status.get("incident") is not None
            payload["overall"] = status.get("overall_health")
            payload["chains"] = {
                chain: h.get("status") for chain, h in status.get("health", {}).items()
            }
        self._send_json(200, payload)

    # ── POST ──

    def do_POST(self) -> None:
        if self.provider is None:
            self._send_json(404, {"error": "status API not available"})
            return
        self._dispatch(
            {
                "/api/toggle": self._post_toggle,
                "/api/incident/clear": self._post_clear_incident,
            }
        )

    def _post_toggle(self) -> None:
        body = self._read_json()
        if body is None:
            self._send_json(400, {"error": "invalid JSON body"})
            return
        if "enabled" in body:
            if not isinstance(body["enabled"], bool):
                self._send_json(400, {"error": "enabled must be true or false"})
                return
            self.provider.set_enabled(body["enabled"], source="http")
            enabled = self.provider.is_enabled()
        else:
            enabled = self.provider.toggle()
        self._send_json(200, {"enabled": enabled})

    def _post_clear_incident(self) -> None:
        cleared = self.provider.clear_incident(operator="http")
        if cleared:
            logger.warning("Incident cleared via HTTP by %s", self.client_address[0])
        self._send_json(200, {"cleared": cleared})

    # ── helpers ──

    def _dispatch(self, routes: Dict[str, Callable[[], None]]) -> None:
        route = routes.get(self.path.split("?", 1)[0])
        if route is None:
            self._send_json(404, {"error": f"no route for {self.path}"})
            return
        route()

    def _read_json(self) -> Optional[dict]:
        length = int(self.headers.get("Content-Length") or 0)
        if length == 0:
            return {}
        try:
            data = json.loads(self.rfile.read(length).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None

    def _send_json(self, code: int, payload: Any) -> None:
        body = json.dumps(payload, default=str).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args) -> None:  # noqa: A002
        logger.debug("%s - %s", self.client_address[0], format % args)


class _ReusableHTTPServer(HTTPServer):
    allow_reuse_address = True


class MetricsServer:
    """
    Daemon-thread HTTP server for ``/metrics`` and the status API::

        server = MetricsServer(registry, port=9090, provider=bot)
        server.start()
        ...
        server.stop()
    """

    def __init__(
        self,
        registry: MetricsRegistry,
        host: str = "0.0.0.0",
        port: int = 9090,
        provider: Optional[StatusProvider] = None,
    ):
        self.registry = registry
        self.host = host
        self.port = port
        self.provider = provider
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        handler = type(
            "_BoundHandler",
            (_MetricsHandler,),
            {"registry": self.registry, "provider": self.provider},
        )
        self._server = _ReusableHTTPServer((self.host, self.port), handler)
        self._thread = threading.Thread(
            target=self._server.serve_forever, daemon=True, name="metrics-server"
        )
        self._thread.start()
        logger.info("Metrics/status server listening on %s:%d", self.host, self.bound_port)

    @property
    def bound_port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_address[1]

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        self._thread = None
        logger.info("Metrics server stopped")
