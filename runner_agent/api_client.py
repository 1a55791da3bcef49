"""
Resilient API Client
====================

Thin wrapper around requests for the handful of control-plane calls the
agent makes. Each call is retried with a deterministic exponential backoff:

  attempt 1 → sleep(delay) → attempt 2 → sleep(delay * backoff) → …

An attempt fails when:
  - the transport fails (connection error, timeout, …)
  - call_json():   the body is not valid JSON
  - call_status(): the status code is outside 200–299

A body that parses as JSON ends the retry loop even when it is an error
payload such as {"message": "Bad credentials"}. Auth and permission errors
are not transient, so the caller sees them straight away and decides.

After the last attempt the last response is returned, never raised.
"""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

log = logging.getLogger(__name__)

ACCEPT = "application/vnd.github+json"


@dataclass
class ApiResponse:
    ok:       bool
    status:   Optional[int] = None
    text:     str           = ""
    data:     Any           = None
    error:    Optional[str] = None
    attempts: int           = 0

    def describe(self) -> str:
        if self.error:
            return f"transport error: {self.error}"
        return f"HTTP {self.status}: {self.text[:500] or '<empty>'}"


class ApiClient:
    def __init__(
        self,
        credential:    Optional[str] = None,
        retries:       int   = 6,
        initial_delay: float = 1.0,
        backoff:       float = 2.0,
        timeout:       float = 30.0,
        session:       Optional[requests.Session] = None,
        sleep:         Callable[[float], None] = time.sleep,
    ):
        self.credential    = credential
        self.retries       = max(1, retries)
        self.initial_delay = initial_delay
        self.backoff       = backoff
        self.timeout       = timeout
        self.session       = session or requests.Session()
        self._sleep        = sleep

    # ─── Headers ──────────────────────────────────────────────────────────────

    def headers(self) -> dict:
        headers = {"Accept": ACCEPT}
        if self.credential:
            headers["Authorization"] = f"token {self.credential}"
        return headers

    # ─── Calls ────────────────────────────────────────────────────────────────

    def call_json(self, method: str, url: str, retries: Optional[int] = None) -> ApiResponse:
        """Call `url` until it answers with a JSON document. `retries` overrides the attempt count."""
        return self._with_retries(method, url, self._json_attempt, retries)

    def call_status(self, method: str, url: str) -> ApiResponse:
        """Call `url` until it answers with a 2xx status. The body is ignored."""
        return self._with_retries(method, url, self._status_attempt)

    # ─── Internals ────────────────────────────────────────────────────────────

    def _with_retries(self, method: str, url: str, attempt, retries: Optional[int] = None) -> ApiResponse:
        retries = max(1, retries or self.retries)
        delay = self.initial_delay
        result = ApiResponse(ok=False)
        for i in range(1, retries + 1):
            result = attempt(method, url)
            result.attempts = i
            if result.ok:
                return result

            log.debug(f"[api] {method} {url} attempt {i}/{retries} failed — {result.describe()}")
            if i < retries:
                self._sleep(delay)
                delay = delay * self.backoff

        log.warning(f"[api] {method} {url} failed after {retries} attempt(s) — {result.describe()}")
        return result

    def _send(self, method: str, url: str):
        try:
            return self.session.request(method, url, headers=self.headers(), timeout=self.timeout), None
        except requests.RequestException as e:
            return None, str(e)

    def _json_attempt(self, method: str, url: str) -> ApiResponse:
        resp, error = self._send(method, url)
        if resp is None:
            return ApiResponse(ok=False, error=error)
        try:
            data = resp.json()
        except ValueError:
            return ApiResponse(ok=False, status=resp.status_code, text=resp.text)
        return ApiResponse(ok=True, status=resp.status_code, text=resp.text, data=data)

    def _status_attempt(self, method: str, url: str) -> ApiResponse:
        resp, error = self._send(method, url)
        if resp is None:
            return ApiResponse(ok=False, error=error)
        return ApiResponse(ok=200 <= resp.status_code < 300, status=resp.status_code, text=resp.text)
