from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

import httpx

from auction_intel.data_models import LotRecord, MarketAvailable, MarketInsight, MarketUnavailable, Trend

logger = logging.getLogger(__name__)

_TREND_PATTERNS: tuple[tuple[Trend, re.Pattern[str]], ...] = (
    (Trend.UP, re.compile(r"\b(rising|increas\w*|appreciat\w*|up(?:ward)?|strong demand|climb\w*)\b", re.I)),
    (Trend.DOWN, re.compile(r"\b(falling|declin\w*|decreas\w*|depreciat\w*|down(?:ward)?|soft\w*|weak\w*)\b", re.I)),
    (Trend.STABLE, re.compile(r"\b(stable|steady|flat|unchanged|consistent)\b", re.I)),
)


def detect_trend(narrative: str) -> Trend | None:
    """Trend whose vocabulary appears most often, ties going to the earlier trend.

    None when no cue is present.
    """
    counts = [(len(pattern.findall(narrative)), trend) for trend, pattern in _TREND_PATTERNS]
    best_count = max(c for c, _ in counts)
    if best_count == 0:
        return None
    for count, trend in counts:
        if count == best_count:
            return trend
    return None


class MarketResearchClient:
    """Text market research over an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.perplexity.ai",
        *,
        model: str = "sonar",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._transport = transport
        self._enabled = bool(api_key)

    def _payload(self, lot: LotRecord) -> dict[str, Any]:
        prompt = (
            f"Quick market update for a {lot.description or 'vehicle'}"
            f"{f' with {lot.mileage} miles' if lot.mileage is not None else ''}: current market value, "
            "demand level, and whether prices are rising, falling or stable. Keep it under 100 words."
        )
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": "You are a vehicle market research expert. Be concise and factual."},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": 300,
            "temperature": 0.2,
        }

    async def research(self, lot: LotRecord) -> MarketInsight:
        if not self._enabled:
            return MarketUnavailable(reason="not_configured")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await asyncio.wait_for(
                    client.post(
                        f"{self.base_url}/chat/completions",
                        json=self._payload(lot),
                        headers={"Authorization": f"Bearer {self.api_key}"},
                    ),
                    timeout=self.timeout,
                )
                resp.raise_for_status()
            data = resp.json()
            narrative = str(data["choices"][0]["message"]["content"] or "").strip()
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("Market research timed out after %.1fs for lot %s", self.timeout, lot.lot_id)
            return MarketUnavailable(reason="timeout")
        except Exception as exc:
            logger.warning("Market research failed for lot %s: %s", lot.lot_id, exc)
            return MarketUnavailable(reason="provider_error")

        if not narrative:
            return MarketUnavailable(reason="empty_response")
        citations = data.get("citations") or []
        return MarketAvailable(
            narrative=narrative,
            trend=detect_trend(narrative),
            sources=tuple(str(c) for c in citations),
        )
