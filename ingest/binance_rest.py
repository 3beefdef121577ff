import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from config.settings import ExchangeSettings
from orchestration.errors import CollaboratorError

logger = logging.getLogger(__name__)


MAINNET_URL = "https://fapi.binance.com"
TESTNET_URL = "https://testnet.binancefuture.com"
RECV_WINDOW_MS = 5000


class BinanceAPIError(CollaboratorError):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        super().__init__(f"Binance API error (status={status}, code={code}, msg={msg})")


class BinanceRESTClient:
    """Signed aiohttp client for the USDⓈ-M futures REST API."""

    def __init__(self, settings: Optional[ExchangeSettings] = None, timeout: float = 15.0):
        settings = settings or ExchangeSettings()
        default_url = TESTNET_URL if settings.testnet else MAINNET_URL
        self.base_url = (settings.base_url or default_url).rstrip("/")
        self.api_key = settings.api_key
        self.api_secret = settings.secret_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def _signed_query(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Append timestamp, recvWindow and the HMAC-SHA256 signature."""
        if not (self.api_key and self.api_secret):
            raise CollaboratorError("signed venue request needs both API key and secret")
        query = dict(params)
        query.setdefault("timestamp", int(time.time() * 1000))
        query.setdefault("recvWindow", RECV_WINDOW_MS)
        digest = hmac.new(self.api_secret.encode(), urlencode(query, doseq=True).encode(), hashlib.sha256)
        query["signature"] = digest.hexdigest()
        return query

    @staticmethod
    def _decode(text: str, content_type: str) -> Any:
        if "json" not in content_type:
            return text
        try:
            return json.loads(text)
        except ValueError:
            return text

    async def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                       signed: bool = False) -> Any:
        query = self._signed_query(params or {}) if signed else dict(params or {})
        headers = {"X-MBX-APIKEY": self.api_key} if self.api_key else {}
        session = await self._get_session()
        try:
            async with session.request(method, self.base_url + path, params=query, headers=headers) as resp:
                body = await resp.text()
                payload = self._decode(body, resp.headers.get("Content-Type", ""))
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.debug("%s %s failed: %s", method, path, exc)
            raise CollaboratorError(f"venue request {method} {path} failed: {exc!r}") from exc

        if status >= 400:
            details = payload if isinstance(payload, dict) else {}
            raise BinanceAPIError(status, details.get("code"), details.get("msg"), body)
        return payload

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        # signed params travel in the query string
        return await self._request("POST", path, params=params, signed=signed)
