from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from backend.app.repositories.analytics_repository import AnalyticsRecord, AnalyticsRepository
from backend.app.services.generation_provider import TokenUsage
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("video_digest.analytics")

_ONE_MILLION = Decimal(1_000_000)
_MICROS_PER_USD = Decimal(1_000_000)


@dataclass(frozen=True)
class CostRates:
    """Per-million-token prices in USD; cache multipliers apply to the input price."""

    input_usd_per_million: float = 3.0
    output_usd_per_million: float = 15.0
    cache_read_multiplier: float = 0.1
    cache_creation_multiplier: float = 1.0


def compute_cost_micros(usage: TokenUsage, rates: CostRates) -> int:
    """
    Cost of one provider call in micro-USD.

    `usage.input_tokens` includes both cache subtotals; the regular share is
    what remains after removing them. Rounded half-up once, at the end.
    """
    cache_read = max(0, usage.cache_read_tokens)
    cache_creation = max(0, usage.cache_creation_tokens)
    regular_input = max(0, usage.input_tokens - cache_read - cache_creation)

    input_rate = Decimal(str(rates.input_usd_per_million)) / _ONE_MILLION
    output_rate = Decimal(str(rates.output_usd_per_million)) / _ONE_MILLION
    cost_usd = (
        regular_input * input_rate
        + cache_creation * input_rate * Decimal(str(rates.cache_creation_multiplier))
        + cache_read * input_rate * Decimal(str(rates.cache_read_multiplier))
        + max(0, usage.output_tokens) * output_rate
    )
    return int((cost_usd * _MICROS_PER_USD).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def count_words(text: str) -> int:
    return len(text.split())


class AnalyticsRecorder:
    def __init__(self, *, repository: AnalyticsRepository, telemetry: TelemetryClient) -> None:
        self._repository = repository
        self._telemetry = telemetry

    def record(self, record: AnalyticsRecord) -> None:
        """Persist one attempt; storage failures are logged, never raised."""
        try:
            self._repository.insert(record)
        except Exception as exc:
            LOGGER.warning(
                "analytics record failed video_id=%s status=%s error=%s",
                record.video_id,
                record.status,
                type(exc).__name__,
                exc_info=True,
            )
            self._telemetry.emit(
                "analytics.record.error",
                video_id=record.video_id,
                status=record.status,
                error_type=type(exc).__name__,
            )
