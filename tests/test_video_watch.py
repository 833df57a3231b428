from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from extensions import db
from models import TransactionType, User, UserStatus, UserVideoTask, WalletTransaction
from rewards.audit import LedgerAuditor
from rewards.video_tasks import VideoTaskService


def _watch(user, video, duration=90, interactions=("play",)):
    return VideoTaskService.submit_video_watch(user.id, video.id, duration, interactions=list(interactions))


class TestSubmitWatch:

    def test_scenario_x(self, make_user, make_position, give_position, make_video):
        x = make_user()
        give_position(x, make_position(tasks_per_day=10, unit_price="2.00"))
        video = make_video(duration=100)

        result = _watch(x, video, duration=85)

        assert result["success"] is True
        assert result["state"] == "ACCEPTED"
        assert result["rewardEarned"] == pytest.approx(2.00)
        assert result["newBalance"] == pytest.approx(2.00)
        assert result["tasksCompletedToday"] == 1
        assert result["tasksRemaining"] == 9
        tx = WalletTransaction.query.filter_by(user_id=x.id, type=TransactionType.TASK_INCOME).one()
        assert tx.amount == Decimal("2.00")
        assert db.session.get(User, x.id).wallet_balance == Decimal("2.00")

    def test_same_video_twice_in_a_day_pays_once(self, make_user, make_position, give_position, make_video):
        user = make_user()
        give_position(user, make_position())
        video = make_video()

        first = _watch(user, video)
        second = _watch(user, video)

        assert first["success"] is True
        assert second["success"] is False
        assert second["status"] == 400
        assert second["error"] == "Video already watched today"
        assert WalletTransaction.query.filter_by(user_id=user.id, type=TransactionType.TASK_INCOME).count() == 1

    def test_daily_limit(self, make_user, make_position, give_position, make_video):
        user = make_user()
        give_position(user, make_position(tasks_per_day=1))

        assert _watch(user, make_video())["success"] is True
        result = _watch(user, make_video())
        assert result["status"] == 400
        assert result["error"] == "Daily task limit reached"

    def test_rejections_carry_status_codes(self, make_user, make_position, give_position, make_video):
        no_position = make_user()
        suspended = make_user(status=UserStatus.SUSPENDED)
        video = make_video()

        assert VideoTaskService.submit_video_watch(None, video.id, 90)["status"] == 401
        assert _watch(suspended, video)["status"] == 403
        assert _watch(no_position, video)["error"] == "No active position"
        give_position(no_position, make_position())
        assert VideoTaskService.submit_video_watch(no_position.id, 9999, 90)["status"] == 404

    def test_duration_rejections_leave_no_trace(self, make_user, make_position, give_position, make_video):
        user = make_user()
        give_position(user, make_position())
        video = make_video(duration=100)

        short = _watch(user, video, duration=79)
        long = _watch(user, video, duration=201)

        assert short["error"] == "Video not watched long enough"
        assert long["error"] == "Invalid watch duration"
        assert UserVideoTask.query.filter_by(user_id=user.id).count() == 0
        assert WalletTransaction.query.filter_by(user_id=user.id).count() == 0

    def test_unavailable_videos_are_not_found(self, make_user, make_position, give_position, make_video):
        user = make_user()
        give_position(user, make_position())
        expired = make_video(available_to=datetime.now() - timedelta(hours=1))
        inactive = make_video(is_active=False)

        assert _watch(user, expired)["status"] == 404
        assert _watch(user, inactive)["status"] == 404

    def test_security_score_is_stored(self, make_user, make_position, give_position, make_video):
        user = make_user()
        give_position(user, make_position())
        video = make_video(duration=100)

        result = _watch(user, video, duration=100, interactions=())

        assert result["securityScore"] == 65
        task = UserVideoTask.query.filter_by(user_id=user.id).one()
        assert task.security_score == 65
        tx = WalletTransaction.query.filter_by(user_id=user.id).one()
        assert tx.details["securityScore"] == 65

    def test_fractional_duration_and_evidence_are_kept(self, make_user, make_position, give_position, make_video):
        user = make_user()
        give_position(user, make_position())
        video = make_video(duration=100)

        VideoTaskService.submit_video_watch(
            user.id, video.id, 85.9, interactions=["play", "pause"],
            ip_address="10.9.8.7", device_id="phone-1", user_agent="pytest",
        )

        task = UserVideoTask.query.filter_by(user_id=user.id).one()
        assert task.watch_duration == Decimal("85.90")
        details = WalletTransaction.query.filter_by(user_id=user.id).one().details
        assert details["watchDuration"] == "85.90"
        assert details["userInteractions"] == ["play", "pause"]
        assert details["verificationData"] == {"deviceId": "phone-1", "userAgent": "pytest"}
        assert details["ipAddress"] == "10.9.8.7"

    def test_minimum_security_score_rejects(self, app, make_user, make_position, give_position, make_video):
        app.config["ANTI_CHEAT_MIN_SECURITY_SCORE"] = 80
        user = make_user()
        give_position(user, make_position())

        result = _watch(user, make_video(duration=100), duration=100, interactions=())
        assert result["error"] == "Watch session failed verification"


class TestDownstreamEffects:

    def test_task_pays_upline_and_first_video_trigger(self, make_user, make_position, give_position, make_video):
        grand = make_user()
        parent = make_user(referrer=grand)
        worker = make_user(referrer=parent)
        give_position(worker, make_position(unit_price="10.00"))

        result = _watch(worker, make_video())

        assert result["managementBonusDistributed"] == pytest.approx(1.50)
        assert [e["level"] for e in result["bonusBreakdown"]] == ["A_LEVEL", "B_LEVEL"]
        assert result["referralTriggers"] == ["first_video"]

        parent_types = sorted(
            tx.type.value for tx in WalletTransaction.query.filter_by(user_id=parent.id)
        )
        assert parent_types == ["MANAGEMENT_BONUS_A", "REFERRAL_REWARD_A"]
        for user in (grand, parent, worker):
            assert LedgerAuditor.audit_user(db.session.get(User, user.id))["ok"]

    def test_high_earner_triggers_once(self, make_user, make_position, give_position, make_video):
        referrer = make_user()
        worker = make_user(referrer=referrer, balance="48.00")
        give_position(worker, make_position(unit_price="5.00"))

        crossing = _watch(worker, make_video())
        later = _watch(worker, make_video())

        assert "high_earner" in crossing["referralTriggers"]
        assert "high_earner" not in later["referralTriggers"]
        high_earner = [
            tx for tx in WalletTransaction.query.filter_by(user_id=referrer.id, type=TransactionType.REFERRAL_REWARD_A)
            if tx.details.get("triggerEvent") == "high_earner"
        ]
        assert len(high_earner) == 1


    def test_high_earner_reached_through_upline_credits(self, make_user, make_position, give_position, make_video):
        top = make_user()
        mid = make_user(referrer=top, balance="49.00")
        worker = make_user(referrer=mid)
        give_position(worker, make_position(unit_price="2.00"))
        give_position(mid, make_position(unit_price="2.00"))

        _watch(worker, make_video())
        assert db.session.get(User, mid.id).total_earnings == Decimal("52.20")
        own = _watch(mid, make_video())

        assert own["success"] is True
        assert "high_earner" not in own["referralTriggers"]
        high_earner = [
            tx for tx in WalletTransaction.query.filter_by(user_id=top.id, type=TransactionType.REFERRAL_REWARD_A)
            if tx.details.get("triggerEvent") == "high_earner"
        ]
        assert len(high_earner) == 1
        assert high_earner[0].related_user_id == mid.id

class TestAvailableVideos:

    def test_lists_unwatched_videos_for_the_users_position(self, make_user, make_position, give_position, make_video):
        user = make_user()
        pos = make_position(tasks_per_day=5)
        other = make_position()
        give_position(user, pos)
        watched = make_video()
        scoped = make_video(position=pos)
        foreign = make_video(position=other)
        unscoped = make_video()
        _watch(user, watched)

        listing = VideoTaskService.get_available_videos(user.id)

        assert {v["id"] for v in listing["videos"]} == {scoped.id, unscoped.id}
        assert foreign.id not in [v["id"] for v in listing["videos"]]
        assert listing["tasksRemaining"] == 4
        assert all(v["rewardAmount"] == pytest.approx(2.00) for v in listing["videos"])

    def test_listing_is_limited_to_remaining_tasks(self, make_user, make_position, give_position, make_video):
        user = make_user()
        give_position(user, make_position(tasks_per_day=2))
        for _ in range(4):
            make_video()
        _watch(user, make_video())

        listing = VideoTaskService.get_available_videos(user.id)
        assert listing["tasksRemaining"] == 1
        assert len(listing["videos"]) == 1

    def test_without_position(self, make_user, make_video):
        user = make_user()
        make_video()
        listing = VideoTaskService.get_available_videos(user.id)
        assert listing["videos"] == []
        assert listing["reason"] == "No active position"
