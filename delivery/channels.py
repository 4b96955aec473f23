"""通知通道。

每个通道实现 `send(notice)`，失败抛 ChannelDeliveryError；
调度器逐通道捕获并记录，不影响其他通道。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Protocol

import requests

from shared.config.schema import TelegramConfig, WebhookConfig
from shared.errors import ChannelDeliveryError
from shared.models.models import Signal, SignalType


@dataclass(frozen=True)
class SignalNotice:
    """一条待投递的信号（带上下文）。"""

    user_id: str
    strategy_id: str
    symbol: str
    price: float
    candle_close_time: datetime
    signal: Signal
    signal_hash: str = ""
    strategy_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        sig = self.signal
        return {
            "user_id": self.user_id,
            "strategy_id": self.strategy_id,
            "strategy_name": self.strategy_name or self.strategy_id,
            "symbol": self.symbol,
            "price": self.price,
            "candle_close_time": self.candle_close_time.isoformat(),
            "signal_hash": self.signal_hash,
            "signal_type": sig.type.value,
            "reason": sig.reason,
            "confidence": sig.confidence,
            "stop_loss": sig.stop_loss,
            "take_profit": sig.take_profit,
            "time_to_expire": sig.time_to_expire,
        }


def format_signal_message(notice: SignalNotice) -> str:
    """Markdown 文本（Telegram 等聊天通道共用）。"""
    sig = notice.signal
    emoji = "🟢" if sig.type is SignalType.BUY else "🔴"
    lines = [
        f"{emoji} *{sig.type.value.upper()} SIGNAL*",
        "",
        f"Strategy: {notice.strategy_name or notice.strategy_id}",
        f"Symbol: {notice.symbol}",
        f"Price: {notice.price:,.4f}",
        f"Confidence: {sig.confidence:.0f}%",
    ]
    if sig.stop_loss is not None:
        lines.append(f"Stop Loss: {sig.stop_loss:,.4f}")
    if sig.take_profit is not None:
        lines.append(f"Take Profit: {sig.take_profit:,.4f}")
    if sig.time_to_expire is not None:
        lines.append(f"Expires in: {sig.time_to_expire} min")
    if sig.reason:
        lines.append(f"Reason: {sig.reason}")
    lines.append(f"Candle close: {notice.candle_close_time.isoformat()}")
    return "\n".join(lines)


class Channel(Protocol):
    name: str

    def send(self, notice: SignalNotice) -> None:
        ...


class TelegramChannel:
    name = "telegram"

    def __init__(self, cfg: TelegramConfig, *, session: requests.Session | None = None):
        self.cfg = cfg
        self._session = session or requests.Session()
        self.url = f"https://api.telegram.org/bot{cfg.bot_token}/sendMessage"

    def send(self, notice: SignalNotice) -> None:
        payload = {
            "chat_id": self.cfg.chat_id,
            "text": format_signal_message(notice),
            "parse_mode": "Markdown",
        }
        try:
            resp = self._session.post(self.url, json=payload, timeout=self.cfg.timeout_secs)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise ChannelDeliveryError(self.name, str(exc)) from exc


class WebhookChannel:
    name = "webhook"

    def __init__(self, cfg: WebhookConfig, *, session: requests.Session | None = None):
        self.cfg = cfg
        self._session = session or requests.Session()

    def send(self, notice: SignalNotice) -> None:
        try:
            resp = self._session.post(self.cfg.url, json=notice.to_dict(), timeout=self.cfg.timeout_secs)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise ChannelDeliveryError(self.name, str(exc)) from exc


class CallbackChannel:
    """进程内回调（例如 websocket 广播）。"""

    def __init__(self, callback: Callable[[dict[str, Any]], Any], name: str = "callback"):
        self._callback = callback
        self.name = name

    def send(self, notice: SignalNotice) -> None:
        try:
            self._callback(notice.to_dict())
        except Exception as exc:
            raise ChannelDeliveryError(self.name, str(exc)) from exc
