# rewards/anti_cheat.py
import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


REASON_TOO_SHORT = "Video not watched long enough"
REASON_INVALID_DURATION = "Invalid watch duration"
REASON_LOW_SCORE = "Watch session failed verification"


@dataclass(frozen=True)
class WatchVerdict:
    accepted: bool
    reason: Optional[str]
    security_score: int


class WatchValidator:
    """
    Duration rules for a submitted watch plus an advisory security score.
    The score only rejects a watch when a minimum score is configured.
    """

    MIN_WATCH_RATIO = 0.8
    MIN_WATCH_SECONDS = 30
    MAX_WATCH_RATIO = 2
    MAX_WATCH_SECONDS = 24 * 60 * 60

    @staticmethod
    def parse_duration(value) -> Optional[float]:
        """Return the duration in seconds, or None for anything non-numeric, non-finite or non-positive."""
        if isinstance(value, bool) or value is None:
            return None
        try:
            seconds = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(seconds) or seconds <= 0:
            return None
        return seconds

    @staticmethod
    def minimum_watch_time(canonical: int) -> float:
        return max(canonical * WatchValidator.MIN_WATCH_RATIO, WatchValidator.MIN_WATCH_SECONDS)

    @staticmethod
    def security_score(submitted: float, canonical: int, interactions: Optional[Sequence] = None) -> int:
        score = 100
        if submitted < canonical * 0.8:
            score -= 30
        if not interactions:
            score -= 20
        # Exact-length watches are typical of scripted clients
        if abs(submitted - canonical) < 1:
            score -= 15
        if submitted > canonical * 1.5:
            score -= 10
        return max(0, min(100, score))

    @staticmethod
    def validate(submitted, canonical: int, interactions: Optional[Sequence] = None,
                 min_score: Optional[int] = None) -> WatchVerdict:
        seconds = WatchValidator.parse_duration(submitted)
        if seconds is None or seconds > WatchValidator.MAX_WATCH_SECONDS:
            return WatchVerdict(False, REASON_INVALID_DURATION, 0)

        score = WatchValidator.security_score(seconds, canonical, interactions)

        if seconds < WatchValidator.minimum_watch_time(canonical):
            return WatchVerdict(False, REASON_TOO_SHORT, score)

        if seconds > canonical * WatchValidator.MAX_WATCH_RATIO:
            return WatchVerdict(False, REASON_INVALID_DURATION, score)

        if min_score is not None and score < min_score:
            logger.warning(f"Watch rejected on security score {score} < {min_score}")
            return WatchVerdict(False, REASON_LOW_SCORE, score)

        return WatchVerdict(True, None, score)
