"""Signal alerts — message formatting and webhook delivery."""

import logging
from typing import Optional

import httpx

from signaldesk.strategy.models import Signal

logger = logging.getLogger("signaldesk.alerts")


def format_signal_message(signal: Signal) -> str:
    """One-line alert text for *signal*, fields separated by ``|``."""
    parts = [
        f"Signal {signal.side.upper()} {signal.symbol} {signal.timeframe}",
        f"Entry {signal.entry:.4f} Stop {signal.stop:.4f} TP1 {signal.tp1:.4f} RR {signal.rr:.2f}",
    ]
    score = f"Score {signal.score:.0f}"
    if signal.probability is not None:
        score += f" P(TP1) {signal.probability * 100:.1f}%"
    if signal.ev_r is not None:
        score += f" EV {signal.ev_r:.2f}R"
    parts.append(score)
    if signal.gate_mode or signal.data_source:
        parts.append(
            f"Gate {signal.gate_mode or 'default'} Source {signal.data_source or 'futures'}"
        )
    if signal.reasons:
        parts.append("Reasons: " + "; ".join(signal.reasons))
    parts.append("no financial advice")
    return " | ".join(parts)


class WebhookNotifier:
    """Posts alerts to a chat webhook as ``{"content": message}``.

    Without a URL every call is a no-op.  Delivery failures are logged
    and reported through the return value; they never raise.
    """

    def __init__(self, url: Optional[str] = None, timeout: float = 10.0) -> None:
        self._url = url
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    async def notify(self, message: str) -> bool:
        if not self._url:
            return False
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    self._url, json={"content": message}, timeout=self._timeout
                )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Webhook delivery failed: %s", exc)
            return False
        return True
