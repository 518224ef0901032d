"""
Compliance Engine - Engine Configuration

All scoring, throttling and scheduling thresholds live here so they can be
tuned per deployment through environment variables.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, List, Tuple


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, default))


def _env_int_list(name: str, default: List[int]) -> List[int]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [int(part) for part in raw.split(",") if part.strip()]


# Internal scheduler key - guards /internal endpoints
INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "scheduler-internal-key-change-in-production")


DEFAULT_PRIORITY_WEIGHTS = {
    "high": 1.2,
    "medium": 1.0,
    "low": 0.7,
}


@dataclass
class EngineConfig:
    """
    Tunable thresholds for the deadline engine.

    Defaults follow the values the reminder pipeline has always used;
    none of them is a legal requirement.
    """
    # Lifecycle
    due_soon_window_days: int = 30
    look_ahead_days: int = 90

    # Scorer
    base_score_overdue: int = 90
    base_score_due_soon: int = 60
    base_score_recurrence_created: int = 30
    days_adjustment_cap: int = 30
    priority_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_PRIORITY_WEIGHTS))
    escalation_after_days: int = 7
    escalation_bonus: int = 15
    damping_dismissal_count: int = 3
    damping_multiplier: float = 0.5
    overdue_score_floor: int = 40
    min_notify_score: int = 20
    engagement_boost: int = 5
    engagement_min_recent: int = 5
    engagement_min_open_rate: float = 0.3
    profile_lookback_days: int = 30

    # Throttle & dedup gate
    due_date_bucket_boundaries: List[int] = field(default_factory=lambda: [30, 14, 7, 1])
    rate_limit_per_window: int = 10
    rate_window_hours: int = 24
    failed_retry_after_hours: int = 24

    # Dispatcher
    email_min_score: int = 70
    sms_min_score: int = 95
    max_send_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    sender_timeout_seconds: float = 10.0

    # Sweep
    sweep_workers: int = 4

    def sorted_boundaries(self) -> Tuple[int, ...]:
        """Bucket boundaries, smallest first."""
        return tuple(sorted(set(self.due_date_bucket_boundaries)))

    def priority_weight(self, priority: str) -> float:
        return self.priority_weights.get(priority, 1.0)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build configuration from COMPLIANCE_* environment variables."""
        weights = dict(DEFAULT_PRIORITY_WEIGHTS)
        for level in weights:
            weights[level] = _env_float(f"COMPLIANCE_WEIGHT_{level.upper()}", weights[level])

        return cls(
            due_soon_window_days=_env_int("COMPLIANCE_DUE_SOON_WINDOW_DAYS", 30),
            look_ahead_days=_env_int("COMPLIANCE_LOOK_AHEAD_DAYS", 90),
            base_score_overdue=_env_int("COMPLIANCE_BASE_SCORE_OVERDUE", 90),
            base_score_due_soon=_env_int("COMPLIANCE_BASE_SCORE_DUE_SOON", 60),
            base_score_recurrence_created=_env_int("COMPLIANCE_BASE_SCORE_RECURRENCE", 30),
            days_adjustment_cap=_env_int("COMPLIANCE_DAYS_ADJUSTMENT_CAP", 30),
            priority_weights=weights,
            escalation_after_days=_env_int("COMPLIANCE_ESCALATION_AFTER_DAYS", 7),
            escalation_bonus=_env_int("COMPLIANCE_ESCALATION_BONUS", 15),
            damping_dismissal_count=_env_int("COMPLIANCE_DAMPING_DISMISSALS", 3),
            damping_multiplier=_env_float("COMPLIANCE_DAMPING_MULTIPLIER", 0.5),
            overdue_score_floor=_env_int("COMPLIANCE_OVERDUE_FLOOR", 40),
            min_notify_score=_env_int("COMPLIANCE_MIN_NOTIFY_SCORE", 20),
            engagement_boost=_env_int("COMPLIANCE_ENGAGEMENT_BOOST", 5),
            engagement_min_recent=_env_int("COMPLIANCE_ENGAGEMENT_MIN_RECENT", 5),
            engagement_min_open_rate=_env_float("COMPLIANCE_ENGAGEMENT_MIN_OPEN_RATE", 0.3),
            profile_lookback_days=_env_int("COMPLIANCE_PROFILE_LOOKBACK_DAYS", 30),
            due_date_bucket_boundaries=_env_int_list("COMPLIANCE_BUCKET_BOUNDARIES", [30, 14, 7, 1]),
            rate_limit_per_window=_env_int("COMPLIANCE_RATE_LIMIT", 10),
            rate_window_hours=_env_int("COMPLIANCE_RATE_WINDOW_HOURS", 24),
            failed_retry_after_hours=_env_int("COMPLIANCE_FAILED_RETRY_AFTER_HOURS", 24),
            email_min_score=_env_int("COMPLIANCE_EMAIL_MIN_SCORE", 70),
            sms_min_score=_env_int("COMPLIANCE_SMS_MIN_SCORE", 95),
            max_send_attempts=_env_int("COMPLIANCE_MAX_SEND_ATTEMPTS", 3),
            retry_backoff_seconds=_env_float("COMPLIANCE_RETRY_BACKOFF_SECONDS", 0.5),
            sender_timeout_seconds=_env_float("COMPLIANCE_SENDER_TIMEOUT_SECONDS", 10.0),
            sweep_workers=_env_int("COMPLIANCE_SWEEP_WORKERS", 4),
        )
