from __future__ import annotations

import json
import logging
import os
import random
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .classifier import CONNECT_CODES, TIMEOUT_CODES, RawFailure
from .config import UpstreamConfig
from .utils import log_event

ENDPOINT_UNITS = {
    "/a2/user": 2,
    "/v1/user/by/username": 1,
    "/v2/user/followers": 2,
    "/v2/user/medias": 1,
}

WORK_TYPE_ENDPOINTS = {
    "ACCOUNT_METRICS": "/a2/user",
    "DETAILED_ANALYSIS": "/a2/user",
    "FOLLOWERS_ANALYSIS": "/v2/user/followers",
}


@dataclass(frozen=True)
class ProfileResult:
    data: dict[str, Any]
    request_units: int
    cost: float


class UpstreamFailure(RuntimeError):
    def __init__(self, failure: RawFailure) -> None:
        super().__init__(failure.message or failure.kind)
        self.failure = failure


def failure_from_mapping(payload: dict[str, Any]) -> RawFailure:
    status = payload.get("status") or payload.get("status_code")
    try:
        status = int(status) if status is not None else None
    except (TypeError, ValueError):
        status = None
    code = str(payload["code"]).upper() if payload.get("code") else None
    message = str(payload.get("message") or payload.get("error") or payload.get("detail") or "")
    if status is not None:
        kind = "http"
    elif code in TIMEOUT_CODES:
        kind = "timeout"
    elif code in CONNECT_CODES:
        kind = "network"
    else:
        kind = "other"
    return RawFailure(kind=kind, status=status, code=code, message=message)


def normalize_failure(exc: BaseException) -> RawFailure:
    if isinstance(exc, UpstreamFailure):
        return exc.failure
    if isinstance(exc, HTTPError):
        return RawFailure(kind="http", status=exc.code, message=_http_error_message(exc))
    if isinstance(exc, URLError):
        reason = exc.reason
        if isinstance(reason, BaseException):
            return normalize_failure(reason)
        return RawFailure(kind="network", code="ECONNREFUSED", message=str(reason))
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return RawFailure(kind="timeout", code="ETIMEDOUT", message=str(exc) or "timed out")
    if isinstance(exc, ConnectionResetError):
        return RawFailure(kind="timeout", code="ECONNRESET", message=str(exc))
    if isinstance(exc, socket.gaierror):
        return RawFailure(kind="network", code="ENOTFOUND", message=str(exc))
    if isinstance(exc, ConnectionRefusedError):
        return RawFailure(kind="network", code="ECONNREFUSED", message=str(exc))
    if isinstance(exc, OSError):
        return RawFailure(kind="network", message=str(exc))
    return RawFailure(kind="other", message=str(exc))


def _http_error_message(exc: HTTPError) -> str:
    try:
        body = exc.read().decode("utf-8", errors="replace")
    except (OSError, AttributeError):
        body = ""
    if body:
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            return body[:200]
        if isinstance(parsed, dict):
            detail = parsed.get("message") or parsed.get("detail") or parsed.get("error")
            if detail:
                return str(detail)
    return str(exc.reason or f"HTTP {exc.code}")


class ProfileClient:
    def __init__(
        self,
        config: UpstreamConfig,
        api_key: str | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._api_key = api_key if api_key is not None else os.environ.get(config.api_key_env, "")
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._monotonic = monotonic
        self._last_request: float | None = None
        self._lock = threading.Lock()
        self._logger = logging.getLogger("clonewarden.client")

    def fetch_profile(self, identifier: str, options: dict[str, Any] | None = None) -> ProfileResult:
        options = options or {}
        endpoint = WORK_TYPE_ENDPOINTS.get(str(options.get("work_type")), "/a2/user")
        self._enforce_rate_limit()
        if self.config.mock_mode:
            return self._mock_profile(identifier, endpoint)
        params = {"username": identifier}
        if options.get("force"):
            params["force"] = "on"
        payload = self._get(endpoint, params)
        units = int(payload.get("request_units") or ENDPOINT_UNITS.get(endpoint, 1))
        data = payload.get("response") or payload
        return ProfileResult(data=data, request_units=units, cost=units * self.config.cost_per_unit)

    def _get(self, endpoint: str, params: dict[str, str]) -> dict[str, Any]:
        url = f"{self.config.base_url}{endpoint}?{urlencode(params)}"
        headers = {
            "accept": "application/json",
            "user-agent": self.config.user_agent,
            "x-access-key": self._api_key,
        }
        try:
            request = Request(url, headers=headers)
            with urlopen(request, timeout=self.config.timeout_seconds) as response:
                body = response.read().decode("utf-8")
        except Exception as exc:  # noqa: BLE001
            failure = normalize_failure(exc)
            log_event(
                self._logger,
                logging.WARNING,
                "upstream_request_failed",
                endpoint=endpoint,
                kind=failure.kind,
                status=failure.status,
                code=failure.code,
            )
            raise UpstreamFailure(failure) from exc
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise UpstreamFailure(
                RawFailure(kind="other", message=f"invalid JSON from {endpoint}")
            ) from exc
        if not isinstance(payload, dict):
            raise UpstreamFailure(RawFailure(kind="other", message=f"unexpected payload from {endpoint}"))
        return payload

    def _enforce_rate_limit(self) -> None:
        min_interval = 1.0 / self.config.rate_limit_per_second
        with self._lock:
            now = self._monotonic()
            if self._last_request is not None:
                wait = min_interval - (now - self._last_request)
                if wait > 0:
                    self._sleep(wait)
            self._last_request = self._monotonic()

    def _mock_profile(self, identifier: str, endpoint: str) -> ProfileResult:
        units = ENDPOINT_UNITS.get(endpoint, 1)
        data = {
            "user_id": f"mock_{identifier}",
            "username": identifier,
            "full_name": f"Mock User {identifier}",
            "follower_count": self._rng.randint(100, 100000),
            "following_count": self._rng.randint(50, 5000),
            "media_count": self._rng.randint(10, 2000),
            "is_private": False,
            "is_verified": self._rng.random() < 0.1,
        }
        return ProfileResult(data=data, request_units=units, cost=units * self.config.cost_per_unit)
