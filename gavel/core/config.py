"""
Configuration parameters for Gavel.

Defines per-session bidding rules and engine-wide operational settings.
Values can be overridden from a .env file or GAVEL_* environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from gavel.core.errors import ValidationError


@dataclass(frozen=True)
class SessionConfig:
    """Bidding rules fixed for the lifetime of one session"""

    bid_duration: float = 30  # Seconds on the clock for each item (reset by bids)
    min_bid_increment: int = 1000  # Each bid must beat the last by at least this
    auto_shuffle: bool = True  # Shuffle the catalog snapshot at creation
    rerun_skipped: bool = False  # Re-auction skipped items once in a second round

    def __post_init__(self):
        if self.bid_duration <= 0:
            raise ValidationError(f"bid_duration must be > 0, got {self.bid_duration}")
        if self.min_bid_increment < 1:
            raise ValidationError(
                f"min_bid_increment must be >= 1, got {self.min_bid_increment}"
            )

    def to_dict(self) -> dict:
        return {
            "bid_duration": self.bid_duration,
            "min_bid_increment": self.min_bid_increment,
            "auto_shuffle": self.auto_shuffle,
            "rerun_skipped": self.rerun_skipped,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionConfig":
        return cls(
            bid_duration=data["bid_duration"],
            min_bid_increment=data["min_bid_increment"],
            auto_shuffle=data["auto_shuffle"],
            rerun_skipped=data.get("rerun_skipped", False),
        )


@dataclass
class EngineConfig:
    """Engine-wide configuration parameters"""

    # Session defaults
    session: SessionConfig = field(default_factory=SessionConfig)
    default_budget: int = 1_000_000  # Nominal budget for new sessions

    # Clock driver: background expiry tasks, or lazy expiry on reads only
    auto_expire: bool = True

    # Paths
    data_dir: Path = Path("data")
    log_dir: Path = Path("logs")
    log_to_file: bool = False  # Also write log_dir/gavel.log
    db_name: str = "gavel.db"

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name


_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValidationError(f"{name} must be a boolean, got {raw!r}")


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValidationError(f"{name} must be {cast.__name__}, got {raw!r}") from None


def load_config(env_file: Optional[str] = None) -> EngineConfig:
    """
    Load configuration from a .env file and the environment.

    Variables already present in the environment win over the file.

    Args:
        env_file: Optional path to a .env file (default: search from cwd)

    Returns:
        EngineConfig instance
    """
    load_dotenv(env_file or find_dotenv(usecwd=True), override=False)

    session = SessionConfig(
        bid_duration=_env_number("GAVEL_BID_DURATION", SessionConfig.bid_duration, float),
        min_bid_increment=_env_number(
            "GAVEL_MIN_BID_INCREMENT", SessionConfig.min_bid_increment, int
        ),
        auto_shuffle=_env_bool("GAVEL_AUTO_SHUFFLE", SessionConfig.auto_shuffle),
        rerun_skipped=_env_bool("GAVEL_RERUN_SKIPPED", SessionConfig.rerun_skipped),
    )

    return EngineConfig(
        session=session,
        default_budget=_env_number("GAVEL_DEFAULT_BUDGET", EngineConfig.default_budget, int),
        auto_expire=_env_bool("GAVEL_AUTO_EXPIRE", EngineConfig.auto_expire),
        data_dir=Path(os.getenv("GAVEL_DATA_DIR", str(EngineConfig.data_dir))),
        log_dir=Path(os.getenv("GAVEL_LOG_DIR", str(EngineConfig.log_dir))),
        # Naming a log directory turns file logging on
        log_to_file=_env_bool("GAVEL_LOG_TO_FILE", "GAVEL_LOG_DIR" in os.environ),
    )
