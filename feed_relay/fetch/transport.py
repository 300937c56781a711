"""
HTTP transport for feed polling.

Wraps httpx with the retry loop used for every outbound request. Only
network-level failures are retried here; any HTTP status, including 4xx and
5xx, is returned to the caller for classification.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Callable

import httpx

from ..errors import TransportError
from ..logging_utils import log_event, mask_secrets

logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    """A completed HTTP exchange.

    Attributes:
        status: HTTP status code
        headers: Response headers with lower-cased names
        body: Raw response body
        url: Final URL after redirects
    """

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    url: str = ""

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


class HttpTransport:
    """Synchronous httpx transport with retries on network errors.

    ``transport`` lets tests plug in ``httpx.MockTransport``; ``sleep`` lets
    them skip the delay between attempts.
    """

    def __init__(
        self,
        trust_env: bool = True,
        follow_redirects: bool = True,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.trust_env = trust_env
        self.follow_redirects = follow_redirects
        self._transport = transport
        self._sleep = sleep

    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        retries: int = 0,
        proxy: str | None = None,
    ) -> HttpResponse:
        """Perform one request, retrying network failures up to ``retries`` times.

        Raises:
            TransportError: when no HTTP response was obtained
        """
        last_error: str | None = None
        for attempt in range(retries + 1):
            try:
                with self._client(timeout, proxy) as client:
                    resp = client.request(method, url, headers=headers or {})
                    return HttpResponse(
                        status=resp.status_code,
                        headers={k.lower(): v for k, v in resp.headers.items()},
                        body=resp.content,
                        url=str(resp.url),
                    )
            except httpx.HTTPError as exc:
                last_error = mask_secrets(f"{type(exc).__name__}: {exc}")
                log_event(
                    logger,
                    "Transport attempt failed",
                    level=logging.DEBUG,
                    event="transport_retry",
                    url=url,
                    attempt=attempt + 1,
                    error=last_error,
                )
                if attempt < retries:
                    self._sleep(0.5 * (attempt + 1))
        raise TransportError(last_error or f"Request to {url} failed")

    def _client(self, timeout: float, proxy: str | None) -> httpx.Client:
        kwargs = {
            "timeout": timeout,
            "follow_redirects": self.follow_redirects,
            "trust_env": self.trust_env,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        elif proxy:
            kwargs["proxy"] = proxy
        return httpx.Client(**kwargs)
