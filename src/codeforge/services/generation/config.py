"""Generation Configuration
===========================

Dataclass configuration for chunked generation, plus the job-scoped
premium-model budget.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from codeforge.config.settings import Settings, get_settings
from codeforge.constants import TOKEN_ALLOCATION, FileKind


@dataclass
class GenerationConfig:
    """Knobs for one generation run.

    Attributes:
        premium_model: High-capability model with a finite token budget
        fallback_model: Low-cost model with no budget cap
        premium_budget: Total premium tokens per job
        consistency_reserve: Premium tokens held back for the consistency pass
        foundation_allowance: max_tokens of the single foundation call
        retry_delay: Seconds to wait before retrying failed files
        paid_batch_delay: Inter-batch pause when all models used are paid tier
        free_batch_delay: Inter-batch pause otherwise
        consistency_page_chars: Characters of each page shown to the consistency pass
    """
    premium_model: str = 'minimax/minimax-m2.1'
    fallback_model: str = 'kwaipilot/kat-coder-pro:free'
    premium_budget: int = 64000
    consistency_reserve: int = 10000
    foundation_allowance: int = 28000
    retry_delay: float = 2.0
    paid_batch_delay: float = 0.2
    free_batch_delay: float = 1.0
    tier_override: Optional[str] = None
    temperature: float = 0.7
    timeout: int = 300
    consistency_page_chars: int = 2000
    reasoning_for_premium: bool = True
    token_allocation: Dict[FileKind, int] = field(default_factory=lambda: dict(TOKEN_ALLOCATION))

    # USD per 1M premium tokens, input and output
    premium_input_price: float = 0.30
    premium_output_price: float = 1.50

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides: Any) -> 'GenerationConfig':
        settings = settings or get_settings()
        values: Dict[str, Any] = {
            'premium_model': settings.premium_model,
            'fallback_model': settings.fallback_model,
            'premium_budget': settings.premium_token_budget,
            'tier_override': settings.openrouter_tier,
        }
        values.update(overrides)
        return cls(**values)

    def new_budget(self) -> 'ModelBudget':
        """Fresh budget for one job run."""
        return ModelBudget(
            total=self.premium_budget,
            reserve=self.consistency_reserve,
            foundation_allowance=self.foundation_allowance,
        )

    def estimate_cost(self, premium_tokens: int) -> float:
        """Approximate USD cost, pricing every token at input plus output rates."""
        return premium_tokens * (self.premium_input_price + self.premium_output_price) / 1_000_000


@dataclass
class ModelBudget:
    """Premium-token budget owned by a single job run.

    ``used`` counts tokens already reserved or charged. File selection
    reserves the estimated cost up front via try_reserve, which checks and
    charges without suspending, so sibling tasks in a batch cannot overspend.
    """
    total: int
    reserve: int
    foundation_allowance: int
    used: int = 0
    consistency_used: int = 0

    def available_for_files(self) -> int:
        return self.total - self.reserve - self.used

    @property
    def remaining(self) -> int:
        return self.total - self.used - self.consistency_used

    def try_reserve(self, cost: int) -> bool:
        if cost <= 0 or cost > self.available_for_files():
            return False
        self.used += cost
        return True

    def charge(self, tokens: int) -> None:
        """Record tokens consumed outside try_reserve (the foundation call)."""
        self.used += max(0, tokens)

    def charge_consistency(self, tokens: int) -> None:
        self.consistency_used += max(0, tokens)

    def to_dict(self) -> Dict[str, int]:
        return {
            'total': self.total,
            'reserve': self.reserve,
            'used': self.used,
            'consistency_used': self.consistency_used,
            'available_for_files': self.available_for_files(),
            'remaining': self.remaining,
        }
