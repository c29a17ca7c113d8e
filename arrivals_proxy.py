#!/usr/bin/env python3
# MARTA realtime arrivals proxy for the dashboard.

from collections import deque
import datetime
import logging
import os
import threading
import time
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, request, Response
import requests

from arrivals_cache import (
    ArrivalRecord,
    ArrivalsCache,
    MissingConfig,
    UpstreamError,
    upstream_error,
)

load_dotenv()

log = logging.getLogger("arrivals_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_csv(name: str, default: str) -> List[str]:
    value = os.getenv(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def utc_now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")


MARTA_BASE = os.getenv(
    "MARTA_BASE_URL",
    "https://developerservices.itsmarta.com:18096"
    "/itsmarta/railrealtimearrivals/developerservices/traindata",
)
MARTA_API_KEY = os.getenv("MARTA_API_KEY")

MARTA_CONNECT_TIMEOUT_SEC = env_float("MARTA_CONNECT_TIMEOUT_SEC", 3.0)
MARTA_READ_TIMEOUT_SEC = env_float("MARTA_READ_TIMEOUT_SEC", 7.0)

CACHE_TTL_SEC = env_float("CACHE_TTL_SEC", 60.0)
RETRY_INTERVAL_SEC = env_float("RETRY_INTERVAL_SEC", 2.0)

CORS_ALLOWED_ORIGINS = set(
    env_csv(
        "CORS_ALLOWED_ORIGINS",
        "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
    )
)
if env_bool("CORS_ALLOW_NULL_ORIGIN", False):
    CORS_ALLOWED_ORIGINS.add("null")

TRUST_PROXY_HEADERS = env_bool("TRUST_PROXY_HEADERS", False)

RATE_LIMIT_WINDOW_SEC = env_int("RATE_LIMIT_WINDOW_SEC", 60)
API_RATE_LIMIT_PER_MIN = env_int("API_RATE_LIMIT_PER_MIN", 60)

APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = env_int("APP_PORT", 5010)


class PerKeyLimiter:
    def __init__(
        self, limit: int, window_sec: int, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.limit = max(1, limit)
        self.window_sec = max(1, window_sec)
        self._events: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._next_sweep = clock() + self.window_sec

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def allow(self, key: str) -> Tuple[bool, int]:
        now = self._clock()
        cutoff = now - self.window_sec
        with self._lock:
            # Keys whose newest event left the window are dropped once per window.
            if now >= self._next_sweep:
                for stale in [k for k, ev in self._events.items() if ev[-1] <= cutoff]:
                    del self._events[stale]
                self._next_sweep = now + self.window_sec
            events = self._events.get(key)
            if events is None:
                events = deque[float]()
                self._events[key] = events
            while events and events[0] <= cutoff:
                events.popleft()
            if len(events) >= self.limit:
                retry_after = int(self.window_sec - (now - events[0]))
                return False, max(1, retry_after)
            events.append(now)
            return True, 0


session = requests.Session()


def fetch_marta(api_key: str) -> List[ArrivalRecord]:
    try:
        resp = session.get(
            MARTA_BASE,
            params={"apiKey": api_key},
            timeout=(MARTA_CONNECT_TIMEOUT_SEC, MARTA_READ_TIMEOUT_SEC),
            headers={"Accept": "application/json"},
        )
    except requests.RequestException as exc:
        # Transport failures count as upstream-internal. The exception text
        # embeds the request URL, which carries the API key.
        raise upstream_error(500, f"MARTA request failed ({type(exc).__name__}).") from exc

    if resp.status_code >= 400:
        raise upstream_error(resp.status_code, resp.text or "No response body.")

    try:
        payload = resp.json()
    except ValueError as exc:
        raise upstream_error(502, "MARTA returned invalid JSON.") from exc
    if not isinstance(payload, list):
        raise upstream_error(502, "MARTA returned an unexpected payload.")
    return payload


def get_client_ip() -> str:
    if TRUST_PROXY_HEADERS:
        forwarded_for = request.headers.get("X-Forwarded-For", "")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    return request.remote_addr or "unknown"


def error_response(
    status: int,
    message: str,
    *,
    upstream: Optional[str] = None,
    retry_after: Optional[int] = None,
) -> Response:
    payload: Dict[str, Any] = {"message": message}
    if upstream is not None:
        payload["upstream"] = upstream
    resp = jsonify(payload)
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    if retry_after is not None:
        resp.headers["Retry-After"] = str(retry_after)
    return resp


def create_cache() -> ArrivalsCache:
    return ArrivalsCache(
        fetch_marta,
        ttl_sec=CACHE_TTL_SEC,
        retry_interval_sec=RETRY_INTERVAL_SEC,
    )


def create_app(arrivals: Optional[ArrivalsCache] = None) -> Flask:
    if arrivals is None:
        arrivals = create_cache()
    api_limiter = PerKeyLimiter(API_RATE_LIMIT_PER_MIN, RATE_LIMIT_WINDOW_SEC)

    flask_app = Flask(__name__)
    flask_app.extensions["arrivals_cache"] = arrivals

    @flask_app.before_request
    def apply_rate_limit() -> Optional[Response]:
        if not request.path.startswith("/api/"):
            return None
        if request.method == "OPTIONS":
            return make_response("", 204)
        allowed, retry_after = api_limiter.allow(get_client_ip())
        if not allowed:
            return error_response(429, "Too many requests", retry_after=retry_after)
        return None

    @flask_app.after_request
    def add_common_headers(resp: Response) -> Response:
        origin = request.headers.get("Origin")
        if origin and origin in CORS_ALLOWED_ORIGINS:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Vary"] = "Origin"
            resp.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
            resp.headers["Access-Control-Expose-Headers"] = "Cache-Control, Retry-After"
            resp.headers["Access-Control-Max-Age"] = "600"

        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        return resp

    @flask_app.route("/api/realtime", methods=["GET", "OPTIONS"])
    def realtime() -> Response:
        try:
            result = arrivals.get_arrivals(MARTA_API_KEY)
        except MissingConfig as exc:
            return error_response(500, str(exc))
        except UpstreamError as exc:
            return error_response(500, str(exc), upstream=exc.detail)
        except Exception:
            log.exception("Unexpected error serving arrivals")
            return error_response(500, "Unexpected error")

        resp = jsonify(result.to_dict())
        resp.headers["Cache-Control"] = "no-store"
        return resp

    @flask_app.route("/api/health", methods=["GET"])
    def health() -> Response:
        return jsonify({"status": "ok", "time": utc_now_iso(), "cache": arrivals.status()})

    return flask_app


app = create_app()


if __name__ == "__main__":
    try:
        app.run(host=APP_HOST, port=APP_PORT)
    finally:
        app.extensions["arrivals_cache"].close()
