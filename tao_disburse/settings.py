"""
Run configuration.

Values come from keyword arguments, CLI flags, or the environment (a
``.env`` file is loaded with python-dotenv). Validation failures raise
``ConfigurationError`` before any network activity.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from tao_disburse.batch import DEFAULT_BATCH_SIZE
from tao_disburse.errors import ConfigurationError

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 5.0  # seconds between attempts of one batch

ENV_PREFIX = "TAO_DISBURSE_"


@dataclass(frozen=True)
class PacingSettings:
    """Fixed waits between batches, independent of the retry delay."""

    after_success: float = 3.0
    after_failure: float = 10.0
    between_resumes: float = 5.0

    def validate(self) -> None:
        if self.after_success < 0:
            raise ConfigurationError("Pacing intervals must not be negative")
        if not self.after_failure > self.between_resumes > self.after_success:
            raise ConfigurationError(
                "Pacing must satisfy after_failure > between_resumes > after_success "
                f"(got {self.after_failure}, {self.between_resumes}, {self.after_success})"
            )


@dataclass(frozen=True)
class DispatchSettings:
    """Batching and retry settings for one run."""

    batch_size: int = DEFAULT_BATCH_SIZE
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    pacing: PacingSettings = field(default_factory=PacingSettings)

    def validate(self) -> None:
        if not isinstance(self.batch_size, int) or self.batch_size < 1:
            raise ConfigurationError(f"Batch size must be at least 1, got {self.batch_size}")
        if self.max_retries < 0:
            raise ConfigurationError(f"Max retries must not be negative, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ConfigurationError(f"Retry delay must not be negative, got {self.retry_delay}")
        self.pacing.validate()

    def with_overrides(self, **overrides) -> "DispatchSettings":
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


@dataclass(frozen=True)
class NetworkSettings:
    """Where to send from and where to keep the ledger."""

    wallet: Optional[str] = None
    network: str = "finney"
    ledger_dir: Path = Path(".")
    recipients_file: Optional[Path] = None

    def with_overrides(self, **overrides) -> "NetworkSettings":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _env(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    return value.strip() if value and value.strip() else None


def _env_number(name: str, cast):
    raw = _env(name)
    if raw is None:
        return None
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got '{raw}'")


def load_settings(
    env_file: str | Path | None = None,
) -> tuple[DispatchSettings, NetworkSettings]:
    """Load settings from the environment (and ``env_file`` / ``.env`` if present)."""
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    dispatch = DispatchSettings().with_overrides(
        batch_size=_env_number("BATCH_SIZE", int),
        max_retries=_env_number("MAX_RETRIES", int),
        retry_delay=_env_number("RETRY_DELAY", float),
    )
    ledger_dir = _env("LEDGER_DIR")
    recipients_file = _env("RECIPIENTS_FILE")
    network = NetworkSettings().with_overrides(
        wallet=_env("WALLET"),
        network=_env("NETWORK"),
        ledger_dir=Path(ledger_dir) if ledger_dir else None,
        recipients_file=Path(recipients_file) if recipients_file else None,
    )
    return dispatch, network
