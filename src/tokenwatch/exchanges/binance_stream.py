"""
Binance native WebSocket trade + book-ticker stream for one instrument.

Each instrument gets one combined-stream connection::

    wss://<host>/stream?streams=<id>@trade/<id>@bookTicker

Decoded updates are handed to ``on_update(fields)`` as partial row fields
(``last`` from trades, ``bid``/``ask`` from the book ticker). A message that
fails to decode is dropped; a closed or failed connection is retried after a
fixed delay, forever.

Usage::

    stream = InstrumentStream(
        host="fstream.binance.com",
        market_id="1000PEPEUSDT",
        on_update=lambda fields: store.merge(category, symbol, fields),
    )
    await stream.run_forever()
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Seconds to wait before attempting a reconnect.
_RECONNECT_DELAY_SECS = 1

StreamUpdateCallback = Callable[[dict], None]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _to_float(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number == number else None   # drop NaN


def parse_stream_message(raw: str | bytes) -> dict:
    """
    Extract partial row fields from a raw stream message.

    Accepts both combined-stream envelopes (``{"stream": ..., "data": ...}``)
    and bare payloads. Returns an empty dict for anything that is neither a
    trade nor a book-ticker event. Raises on undecodable JSON.
    """
    msg = json.loads(raw)
    data = msg.get("data", msg) if isinstance(msg, dict) else None
    if not isinstance(data, dict):
        return {}

    stream = str(msg.get("stream", "")) if isinstance(msg, dict) else ""
    event = data.get("e")

    if event == "trade" or stream.endswith("@trade"):
        price = _to_float(data.get("p"))
        return {"last": price} if price is not None else {}

    if event == "bookTicker" or stream.endswith("@bookTicker") or ("b" in data and "a" in data):
        fields = {}
        bid = _to_float(data.get("b"))
        ask = _to_float(data.get("a"))
        if bid is not None:
            fields["bid"] = bid
        if ask is not None:
            fields["ask"] = ask
        return fields

    return {}


# ---------------------------------------------------------------------------
# Stream client
# ---------------------------------------------------------------------------

class InstrumentStream:
    """
    Parameters
    ----------
    host : str
        Stream host, e.g. ``"stream.binance.com:9443"``.
    market_id : str
        Native instrument id, e.g. ``"PEPEUSDT"`` (case-insensitive).
    on_update : StreamUpdateCallback
        Called on the event loop with non-empty partial fields. Must not block.
    reconnect_delay : float
        Fixed delay in seconds between reconnect attempts.
    logger : logging.Logger, optional
    """

    def __init__(
        self,
        host: str,
        market_id: str,
        on_update: StreamUpdateCallback,
        reconnect_delay: float = _RECONNECT_DELAY_SECS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.host = host
        self.market_id = market_id.lower()
        self.on_update = on_update
        self.reconnect_delay = reconnect_delay
        self.logger = logger or logging.getLogger(__name__)

    @property
    def url(self) -> str:
        streams = f"{self.market_id}@trade/{self.market_id}@bookTicker"
        return f"wss://{self.host}/stream?streams={streams}"

    async def run_forever(self) -> None:
        """Connect and listen, reconnecting after ``reconnect_delay`` on any failure."""
        while True:
            try:
                async with websockets.connect(
                    self.url, ping_interval=20, ping_timeout=10, open_timeout=15
                ) as ws:
                    self.logger.info(f"[{self.market_id}] Stream connected.")
                    await self._listen(ws)
                self.logger.warning(
                    f"[{self.market_id}] Stream ended. "
                    f"Reconnecting in {self.reconnect_delay}s …"
                )

            except (ConnectionClosedError, ConnectionClosedOK) as exc:
                self.logger.warning(
                    f"[{self.market_id}] Connection closed ({exc}). "
                    f"Reconnecting in {self.reconnect_delay}s …"
                )

            except Exception as exc:
                self.logger.error(
                    f"[{self.market_id}] Stream error: {exc}. "
                    f"Reconnecting in {self.reconnect_delay}s …"
                )

            await asyncio.sleep(self.reconnect_delay)

    async def _listen(self, ws) -> None:
        async for raw in ws:
            try:
                fields = parse_stream_message(raw)
            except (ValueError, TypeError) as exc:
                self.logger.debug(f"[{self.market_id}] Dropped undecodable message: {exc}")
                continue
            if fields:
                self.on_update(fields)
