import asyncio
import html
import logging
from typing import Any, Mapping, Optional

import aiohttp

from api.metrics import metrics
from config import config


logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class TelegramNotifier:
    """
    Operator notifications through the Telegram Bot API.

    Delivery is fire-and-forget: failures are logged and counted, never
    raised. With no token or chat configured, messages go to the log.
    """

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        enabled: Optional[bool] = None,
        timeout_s: Optional[float] = None,
        quote_asset: Optional[str] = None,
    ):
        section = config.section('telegram')
        self.quote_asset = quote_asset or config.section('exchange').get('quote_asset', 'USDT')
        self.bot_token = bot_token if bot_token is not None else section.get('bot_token')
        self.chat_id = chat_id if chat_id is not None else section.get('chat_id')
        wanted = section.get('enabled', True) if enabled is None else enabled
        self.enabled = bool(wanted and self.bot_token and self.chat_id)
        self.timeout_s = float(timeout_s or section.get('request_timeout_s', 5))
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s))
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def send_message(self, text: str) -> bool:
        if not self.enabled:
            logger.warning("[Notify] %s", text)
            return False

        url = f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage"
        payload = {
            'chat_id': self.chat_id,
            'text': text,
            'parse_mode': 'HTML',
            'disable_web_page_preview': True,
        }
        try:
            session = await self._get_session()
            async with session.post(url, json=payload) as response:
                if response.status != 200:
                    body = await response.text()
                    metrics.record_notification_failure()
                    logger.error("[Notify] Telegram returned %s: %s", response.status, body[:200])
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            metrics.record_notification_failure()
            logger.error("[Notify] Telegram error: %s", exc)
            return False
        return True

    async def send_trade_notification(self, info: Mapping[str, Any]) -> bool:
        action = str(info.get('action', '')).upper()
        icon = '🟢' if action == 'BUY' else '🔴'
        mode = 'Auto' if info.get('automated', True) else 'Manual'
        quote = html.escape(str(info.get('quote_asset') or self.quote_asset))
        lines = [
            f"{icon} <b>{mode} {action}</b> {html.escape(str(info.get('symbol', '')))}",
            f"Quantity: <code>{_fmt(info.get('quantity'))}</code>",
            f"Price: <code>{_fmt(info.get('price'))}</code>",
            f"Amount: <code>{_fmt(info.get('quote_amount'), 2)}</code> {quote}",
        ]
        reference = info.get('reference')
        if reference:
            lines.append(f"Next buy: <code>{_fmt(reference.get('next_buy_price'))}</code>")
            if reference.get('next_sell_price'):
                lines.append(f"Next sell: <code>{_fmt(reference.get('next_sell_price'))}</code>")
        return await self.send_message("\n".join(lines))

    async def send_error_notification(self, message: str) -> bool:
        return await self.send_message(f"⚠️ <b>Error</b>\n{html.escape(str(message))}")

    async def send_status_notification(self, status: Mapping[str, Any]) -> bool:
        lines = ["ℹ️ <b>Status</b>"]
        for key, value in status.items():
            lines.append(f"{html.escape(str(key))}: <code>{html.escape(str(value))}</code>")
        return await self.send_message("\n".join(lines))


def _fmt(value: Any, places: int = 8) -> str:
    if value is None:
        return '-'
    try:
        return f"{float(value):.{places}f}".rstrip('0').rstrip('.')
    except (TypeError, ValueError):
        return html.escape(str(value))
