from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from openai import AsyncOpenAI

from auction_intel.data_models import DamageArea, LotRecord, VisionAssessment, VisionAvailable, VisionUnavailable

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are a conservative automotive damage assessor. Report only damage that is clearly "
    "visible in the photos. If no damage is visible, say so explicitly."
)

_USER_PROMPT = """Assess this {description} ({mileage} miles, listed damage: {damage}).

Respond with a JSON object with exactly these fields:
- summary: 2-3 sentences based only on what is visible
- damage_areas: list drawn from front, rear, side, roof, undercarriage, interior, glass, mechanical, structural, frame, flood, fire
- repair_cost_low: number in USD, or null when no damage is visible
- repair_cost_high: number in USD, or null when no damage is visible
- confidence: 0-100, reflecting image clarity and visible evidence"""

# Checked in order; the first keyword found in a provider tag wins.
_DAMAGE_KEYWORDS: tuple[tuple[str, DamageArea], ...] = (
    ("flood", DamageArea.FLOOD),
    ("water", DamageArea.FLOOD),
    ("fire", DamageArea.FIRE),
    ("burn", DamageArea.FIRE),
    ("frame", DamageArea.FRAME),
    ("structur", DamageArea.STRUCTURAL),
    ("unibody", DamageArea.STRUCTURAL),
    ("undercarriage", DamageArea.UNDERCARRIAGE),
    ("under", DamageArea.UNDERCARRIAGE),
    ("roof", DamageArea.ROOF),
    ("rollover", DamageArea.ROOF),
    ("glass", DamageArea.GLASS),
    ("windshield", DamageArea.GLASS),
    ("interior", DamageArea.INTERIOR),
    ("mechanic", DamageArea.MECHANICAL),
    ("engine", DamageArea.MECHANICAL),
    ("front", DamageArea.FRONT),
    ("rear", DamageArea.REAR),
    ("side", DamageArea.SIDE),
    ("door", DamageArea.SIDE),
)


def classify_damage(tag: str) -> DamageArea:
    lowered = tag.strip().lower()
    for keyword, area in _DAMAGE_KEYWORDS:
        if keyword in lowered:
            return area
    return DamageArea.OTHER


def _number(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        match = re.search(r"\d[\d,]*(?:\.\d+)?", value)
        if match:
            return float(match.group(0).replace(",", ""))
    return None


def _confidence(value: Any) -> int:
    number = _number(value)
    if number is None:
        return 0
    if 0 < number <= 1:
        number *= 100
    return int(round(max(0.0, min(100.0, number))))


def parse_assessment(payload: dict[str, Any], image_count: int) -> VisionAssessment:
    """Turn the provider's loose JSON into a typed assessment."""
    raw_areas = payload.get("damage_areas") or payload.get("damageAreas") or []
    if isinstance(raw_areas, str):
        raw_areas = [raw_areas]
    areas: list[DamageArea] = []
    for tag in raw_areas:
        area = classify_damage(str(tag))
        if area not in areas:
            areas.append(area)

    summary = str(payload.get("summary") or payload.get("damageAssessment") or "").strip()
    if not summary:
        return VisionUnavailable(reason="empty_response", has_images=True, image_count=image_count)
    return VisionAvailable(
        image_count=image_count,
        summary=summary,
        damage_areas=tuple(areas),
        confidence=_confidence(payload.get("confidence", payload.get("confidenceScore"))),
        repair_cost_low=_number(payload.get("repair_cost_low")),
        repair_cost_high=_number(payload.get("repair_cost_high")),
    )


class VisionAssessorClient:
    """Image-based condition assessment. Never raises; degrades to VisionUnavailable."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o",
        base_url: str | None = None,
        timeout: float = 20.0,
        max_images: int = 4,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.max_images = max_images
        self._client = client
        if self._client is None and api_key:
            self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    async def assess(self, lot: LotRecord) -> VisionAssessment:
        images = list(lot.image_urls[: self.max_images])
        if not images:
            return VisionUnavailable(reason="no_images", has_images=False)
        if self._client is None:
            return VisionUnavailable(reason="not_configured", has_images=True, image_count=len(images))

        prompt = _USER_PROMPT.format(
            description=lot.description or "vehicle",
            mileage=lot.mileage if lot.mileage is not None else "unknown",
            damage=lot.damage_primary or "none listed",
        )
        content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        content.extend({"type": "image_url", "image_url": {"url": url, "detail": "high"}} for url in images)

        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": _SYSTEM_PROMPT},
                        {"role": "user", "content": content},
                    ],
                    response_format={"type": "json_object"},
                    max_tokens=800,
                ),
                timeout=self.timeout,
            )
            raw = response.choices[0].message.content or ""
        except asyncio.TimeoutError:
            logger.warning("Vision assessment timed out after %.1fs for lot %s", self.timeout, lot.lot_id)
            return VisionUnavailable(reason="timeout", has_images=True, image_count=len(images))
        except Exception as exc:
            logger.warning("Vision assessment failed for lot %s: %s", lot.lot_id, exc)
            return VisionUnavailable(reason="provider_error", has_images=True, image_count=len(images))

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            payload = None
        if not isinstance(payload, dict):
            logger.warning("Vision response for lot %s was not a JSON object", lot.lot_id)
            return VisionUnavailable(reason="malformed_response", has_images=True, image_count=len(images))
        return parse_assessment(payload, image_count=len(images))
