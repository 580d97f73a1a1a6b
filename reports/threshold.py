"""
Quorum score deciding when aggregated crowd reports become official.

  valid        = reporters with reputation >= min_reputation_per_user
  report_score = min(len(valid) / base_report_count, 1)
  rep_score    = min(total_reputation / base_reputation_required, 1)
                 * (1 + high_fraction * high_reputation_bonus), capped at 1.5
  score        = report_score * report_weight + rep_score * reputation_weight
  official     = score >= 1.0

Everything here is a pure function of its inputs.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ThresholdConfig:
    base_report_count: int = 3
    base_reputation_required: int = 100
    reputation_weight: float = 0.6
    report_weight: float = 0.4
    min_reputation_per_user: int = 10
    high_reputation_bonus: float = 0.25
    high_reputation_threshold: int = 100


DEFAULT_THRESHOLD_CONFIG = ThresholdConfig()

THRESHOLD_REQUIRED = 1.0
MAX_REPUTATION_SCORE = 1.5


@dataclass(frozen=True)
class ThresholdResult:
    is_official: bool
    current_score: float
    reputation_score: float
    report_score: float
    valid_reporters: int
    high_reputation_reporters: int
    total_reputation: int
    average_reputation: float
    threshold: float = THRESHOLD_REQUIRED


@dataclass(frozen=True)
class NotificationProgress:
    percentage: float
    reports_needed: int
    reputation_needed: int
    is_close: bool


def calculate_threshold(
    report_count: int,
    total_reputation: int,
    reporter_reputations: list[int],
    config: ThresholdConfig = DEFAULT_THRESHOLD_CONFIG,
) -> ThresholdResult:
    """
    Score a pending report from its reporters' reputations.

    report_count is accepted for call-site symmetry; only reporters at or
    above the reputation floor count toward quorum.
    """
    valid = [r for r in reporter_reputations if r >= config.min_reputation_per_user]
    high = sum(1 for r in valid if r >= config.high_reputation_threshold)
    average = sum(valid) / len(valid) if valid else 0.0

    report_score = min(len(valid) / config.base_report_count, 1.0)
    reputation_score = min(total_reputation / config.base_reputation_required, 1.0)
    if high:
        bonus = (high / len(valid)) * config.high_reputation_bonus
        reputation_score = min(reputation_score * (1 + bonus), MAX_REPUTATION_SCORE)

    score = report_score * config.report_weight + reputation_score * config.reputation_weight
    return ThresholdResult(
        is_official=score >= THRESHOLD_REQUIRED,
        current_score=score,
        reputation_score=reputation_score,
        report_score=report_score,
        valid_reporters=len(valid),
        high_reputation_reporters=high,
        total_reputation=total_reputation,
        average_reputation=average,
    )


def calculate_notification_progress(
    report_count: int,
    total_reputation: int,
    reporter_reputations: list[int],
    config: ThresholdConfig = DEFAULT_THRESHOLD_CONFIG,
) -> NotificationProgress:
    result = calculate_threshold(report_count, total_reputation, reporter_reputations, config)
    percentage = min(result.current_score * 100, 100.0)
    return NotificationProgress(
        percentage=percentage,
        reports_needed=reports_needed(result, config),
        reputation_needed=max(0, config.base_reputation_required - total_reputation),
        is_close=percentage > 75,
    )


def reports_needed(result: ThresholdResult, config: ThresholdConfig = DEFAULT_THRESHOLD_CONFIG) -> int:
    return max(0, config.base_report_count - result.valid_reporters)


def threshold_message(result: ThresholdResult, config: ThresholdConfig = DEFAULT_THRESHOLD_CONFIG) -> str:
    """Short progress line shown to the reporter."""
    progress = round(result.current_score * 100)
    needed = reports_needed(result, config)

    if result.is_official:
        return f"Report verified ({progress}%)."
    if progress >= 75:
        return f"Almost there: {progress}% complete, needs {needed} more report(s)."
    if progress >= 50:
        return f"Good progress: {progress}%, {needed} more report(s) needed."
    return f"Report added ({progress}%), needs {needed} more confirmation(s)."
