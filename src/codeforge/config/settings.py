"""
Application Configuration
========================

Environment-driven settings for the request layer and generation pipeline.
"""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from codeforge.services.service_base import ValidationError


DEFAULT_PREMIUM_MODEL = 'minimax/minimax-m2.1'
DEFAULT_FALLBACK_MODEL = 'kwaipilot/kat-coder-pro:free'


def _env_path(name: str, default: Path) -> Path:
    value = os.environ.get(name)
    return Path(value) if value else default


def _env_number(name: str, default: float, cast: Callable[[str], float]) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        number = cast(value)
    except ValueError:
        raise ValidationError(f"{name} must be a number, got {value!r}") from None
    if number <= 0:
        raise ValidationError(f"{name} must be positive, got {value!r}")
    return number


def _env_int(name: str, default: int) -> int:
    return int(_env_number(name, default, int))


def _env_float(name: str, default: float) -> float:
    return _env_number(name, default, float)


def _default_base() -> Path:
    return Path(tempfile.gettempdir()) / 'codeforge-jobs'


@dataclass
class Settings:
    """Process-wide configuration.

    Attributes:
        work_base: Root of per-job workspaces (spec.json, job.json, generated/)
        output_base: Root of per-job output mirrors
        log_base: Root of per-job log files
        zip_base: Directory holding finished <job_id>.zip archives
        redis_url: Lease store URL; None runs the lease lock memory-only
        instance_id: Identifier of this replica, used in lease owners
        lock_ttl_seconds: Default lease TTL
        openrouter_tier: 'paid', 'free' or None (derive from model id)
    """
    work_base: Path = field(default_factory=lambda: _default_base() / 'work')
    output_base: Path = field(default_factory=lambda: _default_base() / 'output')
    log_base: Path = field(default_factory=lambda: _default_base() / 'logs')
    zip_base: Optional[Path] = None
    redis_url: Optional[str] = None
    instance_id: str = field(default_factory=lambda: os.urandom(4).hex())
    lock_ttl_seconds: float = 180.0
    openrouter_api_key: str = ''
    openrouter_site_url: str = 'https://codeforge.local'
    openrouter_site_name: str = 'codeforge'
    openrouter_tier: Optional[str] = None
    premium_model: str = DEFAULT_PREMIUM_MODEL
    fallback_model: str = DEFAULT_FALLBACK_MODEL
    premium_token_budget: int = 64000
    log_level: str = 'INFO'
    log_dir: Optional[Path] = None

    @property
    def resolved_zip_base(self) -> Path:
        """Zip archives live next to the output mirrors unless overridden."""
        return self.zip_base or self.output_base

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from environment variables."""
        base = _default_base()
        tier = (os.environ.get('OPENROUTER_TIER') or '').strip().lower() or None
        zip_base = os.environ.get('JOB_ZIP_BASE')
        log_dir = os.environ.get('LOG_DIR')
        return cls(
            work_base=_env_path('JOB_WORK_BASE', base / 'work'),
            output_base=_env_path('JOB_OUTPUT_BASE', base / 'output'),
            log_base=_env_path('JOB_LOG_BASE', base / 'logs'),
            zip_base=Path(zip_base) if zip_base else None,
            redis_url=os.environ.get('REDIS_URL') or None,
            instance_id=os.environ.get('INSTANCE_ID') or os.urandom(4).hex(),
            lock_ttl_seconds=_env_float('LOCK_TTL_SECONDS', 180.0),
            openrouter_api_key=os.environ.get('OPENROUTER_API_KEY', ''),
            openrouter_site_url=os.environ.get('OPENROUTER_SITE_URL', 'https://codeforge.local'),
            openrouter_site_name=os.environ.get('OPENROUTER_SITE_NAME', 'codeforge'),
            openrouter_tier=tier if tier in ('paid', 'free') else None,
            premium_model=os.environ.get('PREMIUM_MODEL', DEFAULT_PREMIUM_MODEL),
            fallback_model=os.environ.get('FALLBACK_MODEL', DEFAULT_FALLBACK_MODEL),
            premium_token_budget=_env_int('PREMIUM_TOKEN_BUDGET', 64000),
            log_level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
            log_dir=Path(log_dir) if log_dir else None,
        )


# Global instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the cached settings instance, loading from the environment once."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
