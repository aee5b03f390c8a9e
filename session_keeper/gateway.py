"""
HTTP gateway for provider calls. One coroutine per request with a hard wall-clock budget;
network failures and timeouts come back as results, never as exceptions.
"""
import asyncio
import json
import logging
from dataclasses import dataclass

import httpx

from session_keeper.config import REQUEST_TIMEOUT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayResult:
    status_code: int | None = None
    body: bytes = b""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code is not None and 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> dict:
        """Body as a JSON object, or {} when it is missing, malformed or not an object."""
        if not self.body:
            return {}
        try:
            data = json.loads(self.body)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


class HttpGateway:
    def __init__(self, timeout: float = REQUEST_TIMEOUT, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        data: dict[str, str] | None = None,
    ) -> GatewayResult:
        """
        Send one request. The whole exchange is aborted after self.timeout seconds;
        the abort is reported the same way as a connection failure.
        """
        try:
            response = await asyncio.wait_for(
                self._client.request(method, url, headers=headers, data=data),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.debug("%s %s aborted after %.1fs", method, url, self.timeout)
            return GatewayResult(error=f"Request timed out after {self.timeout:g}s")
        except httpx.HTTPError as e:
            logger.debug("%s %s failed: %s", method, url, e)
            return GatewayResult(error=str(e) or e.__class__.__name__)
        return GatewayResult(status_code=response.status_code, body=response.content)

    async def aclose(self) -> None:
        await self._client.aclose()
