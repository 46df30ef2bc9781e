import json
import logging
import threading
import time
from typing import Any
from urllib.parse import urlencode, urlsplit

import requests
from pydantic import BaseModel

from testflow_engine.utils.exceptions import DispatchTimeoutError, NetworkError, RunCancelledError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class Cookie(BaseModel):
    name: str
    value: str
    domain: str | None = None
    path: str | None = None
    secure: bool | None = None
    http_only: bool | None = None


class DispatchRequest(BaseModel):
    method: str
    url: str
    headers: dict[str, str] = {}
    query: dict[str, Any] = {}  # list values repeat the key
    body: Any = None


class DispatchResponse(BaseModel):
    status: int
    reason: str = ""
    headers: dict[str, str] = {}
    body: Any = None
    timing_ms: float = 0.0
    cookies: list[Cookie] = []
    decode_note: str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class CookieJar:
    """Cookies collected during one run, keyed by domain."""

    def __init__(self) -> None:
        self._cookies: dict[str, dict[str, Cookie]] = {}
        self._lock = threading.Lock()

    def merge(self, host: str, cookies: list[Cookie]) -> None:
        with self._lock:
            for cookie in cookies:
                domain = (cookie.domain or host).lstrip(".").lower()
                self._cookies.setdefault(domain, {})[cookie.name] = cookie

    def for_host(self, host: str) -> list[Cookie]:
        host = host.lower()
        with self._lock:
            matched: list[Cookie] = []
            for domain, cookies in self._cookies.items():
                if host == domain or host.endswith("." + domain):
                    matched.extend(cookies.values())
            return matched

    def clear(self) -> None:
        with self._lock:
            self._cookies.clear()

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        with self._lock:
            return {
                domain: [c.model_dump() for c in cookies.values()]
                for domain, cookies in self._cookies.items()
            }


def dispatch(
    request: DispatchRequest,
    timeout: float | None = DEFAULT_TIMEOUT,
    proxy_url: str | None = None,
    cookie_jar: CookieJar | None = None,
    cancel_event: threading.Event | None = None,
) -> DispatchResponse:
    if cancel_event is not None and cancel_event.is_set():
        raise RunCancelledError("Run cancelled before dispatch")

    host = urlsplit(request.url).hostname or ""
    cookies = cookie_jar.for_host(host) if cookie_jar is not None else []

    started = time.perf_counter()
    try:
        if proxy_url:
            response = _send_via_proxy(request, proxy_url, cookies, timeout)
        else:
            response = _send_direct(request, cookies, timeout)
    except requests.Timeout as e:
        raise DispatchTimeoutError(f"Request timed out after {timeout}s: {request.method} {request.url}") from e
    except requests.RequestException as e:
        raise NetworkError(f"HTTP request failed: {e}") from e
    response.timing_ms = round((time.perf_counter() - started) * 1000, 2)

    if cookie_jar is not None and response.cookies:
        cookie_jar.merge(host, response.cookies)
    return response


def dispatch_with_retry(
    request: DispatchRequest,
    retry_count: int = 0,
    retry_delay: float = 0.5,
    cancel_event: threading.Event | None = None,
    **kwargs: Any,
) -> tuple[DispatchResponse, int]:
    """Dispatch, retrying network failures with exponential backoff.

    Returns the response and the number of attempts made.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return dispatch(request, cancel_event=cancel_event, **kwargs), attempt
        except NetworkError as e:
            if attempt > retry_count:
                raise
            delay = retry_delay * (2 ** (attempt - 1))
            logger.warning("Attempt %d for %s %s failed (%s), retrying in %.2fs", attempt, request.method, request.url, e, delay)
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise RunCancelledError("Run cancelled during retry backoff") from e
            else:
                time.sleep(delay)


# ── Transports ──────────────────────────────────────────────────────


def _send_direct(request: DispatchRequest, cookies: list[Cookie], timeout: float | None) -> DispatchResponse:
    kwargs: dict[str, Any] = {"headers": request.headers, "timeout": timeout}
    if request.query:
        kwargs["params"] = request.query
    if cookies:
        kwargs["cookies"] = {c.name: c.value for c in cookies}
    if request.body is not None:
        if isinstance(request.body, (dict, list)):
            kwargs["json"] = request.body
        else:
            kwargs["data"] = request.body if isinstance(request.body, (str, bytes)) else json.dumps(request.body)

    resp = requests.request(request.method.upper(), request.url, **kwargs)

    body, note = decode_body(resp.headers.get("Content-Type", ""), resp.text)
    return DispatchResponse(
        status=resp.status_code,
        reason=resp.reason or "",
        headers=dict(resp.headers),
        body=body,
        cookies=[
            Cookie(name=c.name, value=c.value or "", domain=c.domain or None, path=c.path, secure=c.secure)
            for c in resp.cookies
        ],
        decode_note=note,
    )


def _send_via_proxy(
    request: DispatchRequest,
    proxy_url: str,
    cookies: list[Cookie],
    timeout: float | None,
) -> DispatchResponse:
    url = request.url
    if request.query:
        url = f"{url}{'&' if '?' in url else '?'}{urlencode(request.query, doseq=True)}"
    body = request.body
    if body is not None and not isinstance(body, str):
        body = json.dumps(body)
    payload = {
        "url": url,
        "method": request.method.upper(),
        "headers": request.headers,
        "body": body,
        "cookies": [c.model_dump(exclude_none=True) for c in cookies],
    }
    resp = requests.post(proxy_url, json=payload, timeout=timeout)
    if resp.status_code >= 400:
        raise NetworkError(f"Proxy error {resp.status_code}: {resp.text}")
    try:
        data = resp.json()
    except ValueError as e:
        raise NetworkError(f"Proxy returned invalid JSON: {e}") from e

    headers = {str(k): str(val) for k, val in (data.get("headers") or {}).items()}
    raw_body = data.get("body")
    note = None
    if isinstance(raw_body, str):
        raw_body, note = decode_body(headers.get("content-type") or headers.get("Content-Type", ""), raw_body)
    return DispatchResponse(
        status=int(data.get("status", 0)),
        reason=data.get("statusText") or "",
        headers=headers,
        body=raw_body,
        cookies=[Cookie.model_validate(_normalize_cookie(c)) for c in data.get("cookies") or []],
        decode_note=note,
    )


def _normalize_cookie(raw: dict[str, Any]) -> dict[str, Any]:
    cookie = dict(raw)
    if "httpOnly" in cookie:
        cookie["http_only"] = cookie.pop("httpOnly")
    cookie["value"] = str(cookie.get("value", ""))
    return cookie


# ── Decoding ────────────────────────────────────────────────────────


def decode_body(content_type: str, text: str) -> tuple[Any, str]:
    """Decode a body by content type. Never raises; returns (value, path taken)."""
    content_type = (content_type or "").lower()
    if "json" in content_type:
        try:
            return (json.loads(text) if text else None), "json"
        except ValueError:
            return text, "json-fallback-text"
    if "text/html" in content_type:
        return text, "html"
    if "xml" in content_type:
        return text, "xml"
    if "text/" in content_type:
        return text, "text"
    if not text:
        return None, "empty"
    try:
        return json.loads(text), "auto-json"
    except ValueError:
        return text, "auto-text"
