"""
Health of the upstream services a site evaluation depends on.

Keyed or paid services (Google Maps, Mapbox Tilequery, Census ACS) are
tracked passively: every real call made while evaluating a site lands in
a rolling window and the success rate decides the status. The two free,
keyless lookups (FCC Area API, Census Geocoder) are also probed from a
daemon thread every HEALTH_CHECK_INTERVAL seconds with a fixed point in
Austin; a probe only counts as healthy when the payload carries the
fields the evaluator reads.

/healthz reports get_status(). One monitor per process.
"""

import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL = int(os.environ.get("HEALTH_CHECK_INTERVAL", "300"))

WINDOW_SIZE = 50
PROBE_TIMEOUT = 10

# (minimum success rate, status), best first
STATUS_THRESHOLDS = ((0.95, "healthy"), (0.70, "degraded"))

# Texas State Capitol
_PROBE_LAT = 30.2747
_PROBE_LNG = -97.7404

PASSIVE_ONLY_SERVICES = ("google_maps", "mapbox", "census_acs")


def _fcc_payload_ok(data: dict) -> bool:
    results = data.get("results") or []
    return bool(results and results[0].get("county_fips"))


def _geocoder_payload_ok(data: dict) -> bool:
    geographies = (data.get("result") or {}).get("geographies") or {}
    return bool(geographies.get("Census Tracts"))


@dataclass(frozen=True)
class Probe:
    service: str
    url: str
    params: Dict[str, Any]
    payload_ok: Callable[[dict], bool]


PROBES = (
    Probe(
        "fcc_area",
        "https://geo.fcc.gov/api/census/area",
        {"lat": _PROBE_LAT, "lon": _PROBE_LNG, "censusYear": 2020, "format": "json"},
        _fcc_payload_ok,
    ),
    Probe(
        "census_geocoder",
        "https://geocoding.geo.census.gov/geocoder/geographies/coordinates",
        {
            "x": _PROBE_LNG,
            "y": _PROBE_LAT,
            "benchmark": "Public_AR_Current",
            "vintage": "Current_Current",
            "format": "json",
        },
        _geocoder_payload_ok,
    ),
)


def classify(success_rate: float) -> str:
    for minimum, status in STATUS_THRESHOLDS:
        if success_rate >= minimum:
            return status
    return "down"


def _iso(ts: Optional[float] = None) -> str:
    if ts is None:
        return datetime.now(timezone.utc).isoformat()
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class HealthCheckResult:
    service: str
    status: str          # healthy | degraded | down | unknown
    mode: str            # active | passive
    latency_ms: int = 0
    last_checked: str = ""
    error: Optional[str] = None
    success_rate: Optional[float] = None
    sample_size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": self.status,
            "mode": self.mode,
            "latency_ms": self.latency_ms,
            "last_checked": self.last_checked,
        }
        for key in ("error", "success_rate", "sample_size"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d


class _CallWindow:
    """The last WINDOW_SIZE call outcomes for one service."""

    def __init__(self) -> None:
        # (timestamp, success, latency_ms, error)
        self.calls = deque(maxlen=WINDOW_SIZE)

    def add(self, success: bool, latency_ms: int, error: Optional[str]) -> None:
        self.calls.append((time.time(), success, latency_ms, error))

    def result(self, service: str) -> HealthCheckResult:
        calls = list(self.calls)
        if not calls:
            return HealthCheckResult(service, "unknown", "passive",
                                     last_checked=_iso(), sample_size=0)
        ok = sum(1 for _, success, _, _ in calls if success)
        rate = ok / len(calls)
        last_error = next(
            (err for _, success, _, err in reversed(calls) if not success and err), None
        )
        return HealthCheckResult(
            service,
            classify(rate),
            "passive",
            latency_ms=int(sum(c[2] for c in calls) / len(calls)),
            last_checked=_iso(max(c[0] for c in calls)),
            error=last_error,
            success_rate=round(rate, 3),
            sample_size=len(calls),
        )


class HealthMonitor:
    """Thread-safe status tracker for the evaluation's upstream services."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: Dict[str, _CallWindow] = {}
        self._probed: Dict[str, HealthCheckResult] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def record_call(self, service: str, success: bool, latency_ms: int,
                    error: Optional[str] = None) -> None:
        with self._lock:
            window = self._windows.setdefault(service, _CallWindow())
            window.add(success, latency_ms, error)

    def passive_status(self, service: str) -> HealthCheckResult:
        with self._lock:
            window = self._windows.get(service) or _CallWindow()
            return window.result(service)

    def probe(self, probe: Probe) -> HealthCheckResult:
        t0 = time.time()
        error = None
        status = "down"
        try:
            resp = requests.get(probe.url, params=probe.params, timeout=PROBE_TIMEOUT)
            if resp.status_code != 200:
                status, error = "degraded", f"HTTP {resp.status_code}"
            elif not probe.payload_ok(resp.json()):
                status, error = "degraded", "unexpected payload"
            else:
                status = "healthy"
        except requests.Timeout:
            error = "timeout"
        except ValueError:
            status, error = "degraded", "invalid JSON"
        except requests.RequestException as e:
            error = str(e)
        return HealthCheckResult(
            probe.service, status, "active",
            latency_ms=int((time.time() - t0) * 1000),
            last_checked=_iso(),
            error=error,
        )

    def run_active_checks(self) -> None:
        for probe in PROBES:
            result = self.probe(probe)
            with self._lock:
                previous = self._probed.get(probe.service)
                self._probed[probe.service] = result
            if previous and previous.status != result.status:
                logger.warning("[health] %s status changed: %s -> %s (error=%s)",
                               probe.service, previous.status, result.status, result.error)
            else:
                logger.info("[health] %s: %s (%dms)",
                            probe.service, result.status, result.latency_ms)

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        """Per-service status. Probed services use their last probe when there is one."""
        out = {svc: self.passive_status(svc).to_dict() for svc in PASSIVE_ONLY_SERVICES}
        for probe in PROBES:
            with self._lock:
                probed = self._probed.get(probe.service)
            result = probed or self.passive_status(probe.service)
            out[probe.service] = result.to_dict()
        return out

    def _loop(self) -> None:
        logger.info("[health] Monitor thread started (interval=%ds)", HEALTH_CHECK_INTERVAL)
        while not self._stop_event.is_set():
            try:
                self.run_active_checks()
            except Exception:
                logger.exception("[health] Active checks failed")
            self._stop_event.wait(timeout=HEALTH_CHECK_INTERVAL)
        logger.info("[health] Monitor thread stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()


_monitor = HealthMonitor()


def record_call(service: str, success: bool, latency_ms: int,
                error: Optional[str] = None) -> None:
    _monitor.record_call(service, success, latency_ms, error)


def get_status() -> Dict[str, Dict[str, Any]]:
    return _monitor.get_all_status()


def start_monitor() -> None:
    _monitor.start()


def stop_monitor() -> None:
    _monitor.stop()
