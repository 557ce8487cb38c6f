"""Batch Pacing
===============

Tier-aware delay between generation batches to stay under provider rate
limits. Paid-tier models get a short pause, free-tier models a longer one.
Delays apply between batches only, never within one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from codeforge.constants import ModelTier

logger = logging.getLogger(__name__)


def model_tier(model: str, tier_override: Optional[str] = None) -> ModelTier:
    """Tier of a model: explicit override first, else ':free' suffix."""
    if tier_override:
        return ModelTier.FREE if tier_override.lower() == 'free' else ModelTier.PAID
    return ModelTier.FREE if ':free' in model else ModelTier.PAID


def is_paid_tier(model: str, tier_override: Optional[str] = None) -> bool:
    return model_tier(model, tier_override) == ModelTier.PAID


@dataclass
class BatchPacer:
    """Computes and applies the inter-batch delay.

    Attributes:
        paid_delay: Seconds between batches when every model used was paid tier
        free_delay: Seconds between batches otherwise
        tier_override: 'paid'/'free' from OPENROUTER_TIER, or None
    """
    paid_delay: float = 0.2
    free_delay: float = 1.0
    tier_override: Optional[str] = None

    def delay_for(self, models: Iterable[str]) -> float:
        used = list(models)
        if not used:
            return self.paid_delay if self.tier_override == 'paid' else self.free_delay
        if all(is_paid_tier(m, self.tier_override) for m in used):
            return self.paid_delay
        return self.free_delay

    async def pause(self, models: Iterable[str]) -> float:
        delay = self.delay_for(models)
        if delay > 0:
            logger.debug(f"Pausing {delay:.1f}s before next batch")
            await asyncio.sleep(delay)
        return delay
