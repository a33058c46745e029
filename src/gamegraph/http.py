import logging
import random
import threading
import time
from collections import Counter
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import requests

from . import config
from .errors import FetchError

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


def parse_retry_after(value, now=None):
    """Return the Retry-After delay in seconds (delta-seconds or HTTP date), or None."""
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class FetchStats:
    """Thread-safe counters shared by every fetcher and cache in one run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts = Counter()
        self._statuses = Counter()

    def increment(self, name, amount=1):
        with self._lock:
            self._counts[name] += amount

    def record_status(self, status):
        with self._lock:
            self._statuses[str(status)] += 1

    def get(self, name):
        with self._lock:
            return self._counts[name]

    def snapshot(self):
        with self._lock:
            data = {
                "network_calls": 0,
                "retries": 0,
                "failures": 0,
                "cache_hits": 0,
                "cache_misses": 0,
            }
            data.update(self._counts)
            data["http_status_counts"] = dict(self._statuses)
            return data


class RateGate:
    """Serializes requests to one upstream with a minimum interval and an adaptive slow window."""

    def __init__(self, min_interval_ms, clock=time.monotonic, sleep=time.sleep):
        self.min_interval = max(0, min_interval_ms) / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_allowed = 0.0
        self._slow_until = 0.0

    @property
    def slow_until(self):
        with self._lock:
            return self._slow_until

    def wait(self):
        with self._lock:
            now = self._clock()
            start = max(now, self._next_allowed, self._slow_until)
            self._next_allowed = start + self.min_interval
        delay = start - now
        if delay > 0:
            self._sleep(delay)
        return delay

    def penalize(self, wait_seconds, status):
        """Raise the slow window after a throttled or failed upstream response."""
        with self._lock:
            now = self._clock()
            if status == 429:
                target = now + wait_seconds
            else:
                penalty = min(
                    config.SLOW_WINDOW_MAX_MS / 1000.0,
                    max(config.SLOW_WINDOW_MIN_MS / 1000.0, wait_seconds * 0.75),
                )
                target = now + penalty
            self._slow_until = max(self._slow_until, target)
            return self._slow_until

    def relax(self):
        with self._lock:
            now = self._clock()
            if self._slow_until > now:
                self._slow_until = max(now, self._slow_until - config.SLOW_WINDOW_RELAX_MS / 1000.0)


class Fetcher:
    """Retrying HTTP primitive for one upstream.

    Retries 429/5xx and transport failures with capped exponential backoff and jitter.
    Retry-After overrides the computed backoff and raises the gate's slow window, which
    then delays every later request made through the same gate. Other statuses fail
    immediately with the first part of the body attached to the FetchError.
    """

    def __init__(
        self,
        session,
        headers,
        *,
        stats,
        name,
        gate=None,
        max_concurrency=None,
        max_retries=config.HTTP_MAX_RETRIES,
        backoff_base_ms=config.HTTP_BACKOFF_BASE_MS,
        backoff_cap_ms=config.HTTP_BACKOFF_CAP_MS,
        timeout=config.API_TIMEOUT,
        sleep=time.sleep,
        rng=random.random,
    ):
        if not headers or not headers.get("User-Agent"):
            raise ValueError("Fetcher requires a User-Agent header")
        self.session = session
        self.headers = dict(headers)
        self.stats = stats
        self.name = name
        self.gate = gate
        self._slots = threading.BoundedSemaphore(max_concurrency) if max_concurrency else None
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self.timeout = timeout
        self._sleep = sleep
        self._rng = rng

    def _jitter(self, seconds):
        return max(0.0, seconds * (0.85 + self._rng() * 0.3))

    def _send(self, method, url, params, data, headers):
        if self.gate is not None:
            self.gate.wait()
        self.stats.increment("network_calls")
        self.stats.increment(f"network_calls_{self.name}")
        if self._slots is None:
            return self.session.request(method, url, params=params, data=data, headers=headers, timeout=self.timeout)
        with self._slots:
            return self.session.request(method, url, params=params, data=data, headers=headers, timeout=self.timeout)

    def fetch(self, url, method="GET", *, params=None, data=None, headers=None):
        merged = dict(self.headers)
        merged.setdefault("Accept", "application/json, */*")
        merged.setdefault("Accept-Language", "en")
        if headers:
            merged.update(headers)
        backoff_ms = self.backoff_base_ms
        attempt = 0
        while True:
            try:
                response = self._send(method, url, params, data, merged)
            except TRANSPORT_ERRORS as exc:
                if attempt >= self.max_retries:
                    self.stats.increment("failures")
                    raise FetchError(f"{self.name} transport failure: {exc}", url=url) from exc
                wait = self._jitter(backoff_ms / 1000.0)
                logger.warning(
                    "[!] %s transport error (%s); retry %s/%s in %.2fs",
                    self.name,
                    exc.__class__.__name__,
                    attempt + 1,
                    self.max_retries,
                    wait,
                )
                self.stats.increment("retries")
                self._sleep(wait)
                backoff_ms = min(backoff_ms * 2, self.backoff_cap_ms)
                attempt += 1
                continue

            status = response.status_code
            self.stats.record_status(status)
            if 200 <= status < 300:
                if self.gate is not None:
                    self.gate.relax()
                return response

            body = (response.text or "")[: config.ERROR_BODY_LIMIT]
            if status not in config.RETRYABLE_STATUSES:
                self.stats.increment("failures")
                raise FetchError(f"{self.name} HTTP {status}", url=url, status=status, body=body)
            if attempt >= self.max_retries:
                self.stats.increment("failures")
                raise FetchError(f"{self.name} HTTP {status} after {attempt} retries", url=url, status=status, body=body)

            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            wait = retry_after if retry_after is not None else self._jitter(backoff_ms / 1000.0)
            if self.gate is not None:
                self.gate.penalize(wait, status)
            logger.warning(
                "[!] %s HTTP %s; retry %s/%s in %.2fs%s",
                self.name,
                status,
                attempt + 1,
                self.max_retries,
                wait,
                " (Retry-After)" if retry_after is not None else "",
            )
            self.stats.increment("retries")
            self._sleep(wait)
            backoff_ms = min(backoff_ms * 2, self.backoff_cap_ms)
            attempt += 1

    def get_json(self, url, params=None, *, method="GET", data=None, headers=None):
        response = self.fetch(url, method, params=params, data=data, headers=headers)
        try:
            return response.json()
        except ValueError as exc:
            body = (response.text or "")[: config.ERROR_BODY_LIMIT]
            raise FetchError(f"{self.name} returned invalid JSON", url=url, status=response.status_code, body=body) from exc
