import asyncio
import hmac
import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

from config import config


logger = logging.getLogger(__name__)

# Binance: "Timestamp for this request is outside of the recvWindow"
TIMESTAMP_OUTSIDE_WINDOW = -1021


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


class TransientNetworkError(Exception):
    """Network failure or 5xx that persisted through every retry."""

    def __init__(self, method: str, path: str, attempts: int, cause: Optional[BaseException] = None):
        self.method = method
        self.path = path
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{method} {path} failed after {attempts} attempt(s): {cause}")


def sign_query(secret: str, query: str) -> str:
    return hmac.new(secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()


class BinanceRESTClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        recv_window_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_backoff_s: Optional[float] = None,
    ):
        exchange = config.section("exchange")
        self.base_url = (base_url or exchange.get("base_url") or "https://api.binance.com").rstrip("/")
        self.api_key: Optional[str] = api_key if api_key is not None else exchange.get("api_key")
        self.api_secret: Optional[str] = api_secret if api_secret is not None else exchange.get("api_secret")
        self.recv_window_ms = int(recv_window_ms or exchange.get("recv_window_ms", 60000))
        self.max_retries = int(exchange.get("max_retries", 2) if max_retries is None else max_retries)
        self.retry_backoff_s = float(
            exchange.get("retry_backoff_s", 1.0) if retry_backoff_s is None else retry_backoff_s
        )
        self.request_timeout_s = float(exchange.get("request_timeout_s", 15))
        self.time_sync_interval_s = float(exchange.get("server_time_sync_s", 3600))

        # server_ms - local_ms, applied to every signed timestamp
        self.time_offset_ms: int = 0
        self.last_time_sync: float = 0.0

        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                timeout = aiohttp.ClientTimeout(total=self.request_timeout_s)
                self._session = aiohttp.ClientSession(timeout=timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def timestamp_ms(self) -> int:
        return int(time.time() * 1000) + self.time_offset_ms

    async def sync_server_time(self) -> int:
        """Measure the exchange clock offset using the midpoint of the round trip."""
        sent = time.time() * 1000
        payload = await self.get("/api/v3/time")
        received = time.time() * 1000
        server_ms = int(payload["serverTime"])
        self.time_offset_ms = int(server_ms - (sent + received) / 2)
        self.last_time_sync = time.time()
        logger.info("Exchange clock offset %sms", self.time_offset_ms)
        return self.time_offset_ms

    async def _maybe_resync(self) -> None:
        if time.time() - self.last_time_sync < self.time_sync_interval_s:
            return
        try:
            await self.sync_server_time()
        except (BinanceAPIError, TransientNetworkError, KeyError, TypeError, ValueError) as exc:
            # Keep the previous offset; the next signed call tries again
            self.last_time_sync = time.time()
            logger.warning("Server time sync failed: %s", exc)

    def _signed_params(self, params: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, str]]:
        if not self.has_credentials:
            raise RuntimeError("Binance API key/secret required for signed request")
        signed = dict(params)
        signed.pop("signature", None)
        signed["timestamp"] = self.timestamp_ms()
        signed.setdefault("recvWindow", self.recv_window_ms)
        signed["signature"] = sign_query(self.api_secret, urlencode(signed, doseq=True))
        return signed, {"X-MBX-APIKEY": self.api_key}

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        headers: Dict[str, str],
    ) -> Tuple[int, str, str]:
        session = await self._get_session()
        async with session.request(method, url, params=params, headers=headers) as resp:
            text = await resp.text()
            return resp.status, text, resp.headers.get("Content-Type", "")

    @staticmethod
    def _decode(text: str, content_type: str) -> Any:
        if "application/json" in content_type or text[:1] in ("{", "["):
            try:
                return json.loads(text)
            except ValueError:
                return text
        return text

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        retry: bool = True,
    ) -> Any:
        if signed:
            await self._maybe_resync()
        method = method.upper()
        url = f"{self.base_url}{path}"
        attempts = (self.max_retries + 1) if retry else 1
        resynced = False
        last_exc: Optional[BaseException] = None

        attempt = 0
        while attempt < attempts:
            attempt += 1
            request_params = dict(params or {})
            headers: Dict[str, str] = {}
            if signed:
                request_params, headers = self._signed_params(request_params)
            elif self.api_key:
                headers["X-MBX-APIKEY"] = self.api_key

            try:
                status, text, content_type = await self._send(method, url, request_params, headers)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                last_exc = exc
                logger.warning("%s %s network error (attempt %s/%s): %s", method, path, attempt, attempts, exc)
            else:
                payload = self._decode(text, content_type)
                if status < 400:
                    return payload
                code = payload.get("code") if isinstance(payload, dict) else None
                msg = payload.get("msg") if isinstance(payload, dict) else None
                error = BinanceAPIError(status, code, msg, text)
                if status < 500:
                    if signed and code == TIMESTAMP_OUTSIDE_WINDOW and not resynced:
                        resynced = True
                        self.last_time_sync = 0.0
                        await self._maybe_resync()
                        attempt -= 1
                        continue
                    raise error
                last_exc = error
                logger.warning("%s %s server error %s (attempt %s/%s)", method, path, status, attempt, attempts)

            if attempt < attempts:
                await asyncio.sleep(self.retry_backoff_s * attempt)

        raise TransientNetworkError(method, path, attempts, last_exc)

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        retry: bool = True,
    ) -> Any:
        # Binance REST accepts signed params in query string
        return await self._request("POST", path, params=params, signed=signed, retry=retry)
