import pytest

from rewards.anti_cheat import (
    WatchValidator, REASON_TOO_SHORT, REASON_INVALID_DURATION, REASON_LOW_SCORE,
)


class TestDurationRules:

    @pytest.mark.parametrize("submitted, accepted, reason", [
        (79, False, REASON_TOO_SHORT),
        (80, True, None),
        (200, True, None),
        (201, False, REASON_INVALID_DURATION),
    ])
    def test_boundaries_for_100_second_video(self, submitted, accepted, reason):
        verdict = WatchValidator.validate(submitted, 100, interactions=["play"])
        assert verdict.accepted is accepted
        assert verdict.reason == reason

    def test_short_videos_need_at_least_30_seconds(self):
        assert WatchValidator.validate(29, 20, ["play"]).reason == REASON_TOO_SHORT
        assert WatchValidator.validate(30, 20, ["play"]).accepted

    @pytest.mark.parametrize("submitted", ["abc", None, True, 0, -5, float("nan"), 24 * 3600 + 1])
    def test_malformed_durations_are_invalid(self, submitted):
        verdict = WatchValidator.validate(submitted, 100, ["play"])
        assert not verdict.accepted
        assert verdict.reason == REASON_INVALID_DURATION

    def test_numeric_strings_are_accepted(self):
        assert WatchValidator.validate("95.5", 100, ["play"]).accepted


class TestSecurityScore:

    def test_clean_watch_scores_full_marks(self):
        assert WatchValidator.security_score(95, 100, ["play", "seek"]) == 100

    def test_exact_length_without_interactions(self):
        # no interactions -20, within one second of canonical -15
        assert WatchValidator.security_score(100, 100, []) == 65

    def test_overlong_watch_is_penalised(self):
        assert WatchValidator.security_score(160, 100, ["play"]) == 90

    def test_short_watch_without_interactions(self):
        assert WatchValidator.security_score(50, 100, None) == 50

    def test_score_is_reported_but_not_gating_by_default(self):
        verdict = WatchValidator.validate(100, 100, [])
        assert verdict.accepted
        assert verdict.security_score == 65

    def test_minimum_score_turns_score_into_rejection(self):
        verdict = WatchValidator.validate(100, 100, [], min_score=70)
        assert not verdict.accepted
        assert verdict.reason == REASON_LOW_SCORE
        assert verdict.security_score == 65
