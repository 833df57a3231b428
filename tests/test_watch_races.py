"""
Concurrent submissions against a file-backed database, one app context per thread.
"""
import os
import threading
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app import create_app
from config import Config
from extensions import db
from models import Position, TransactionType, User, UserPosition, UserVideoTask, Video, WalletTransaction
from rewards.video_tasks import VideoTaskService


@pytest.fixture
def file_app(tmp_path):
    class FileConfig(Config):
        TESTING = True
        DEBUG = False
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'watch.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        REDIS_URL = None
        LOG_DIR = os.environ["LOG_DIR"]
        ANTI_CHEAT_MIN_SECURITY_SCORE = None

    app = create_app(FileConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _setup_worker(tasks_per_day, videos):
    position = Position(
        name="Race", level=50, tasks_per_day=tasks_per_day,
        unit_price=Decimal("2.00"), price=Decimal("0.00"), validity_days=30,
    )
    user = User(username="racer", email="racer@example.com", referral_code="RACE0001")
    user.set_password("secret123")
    db.session.add_all([position, user])
    db.session.flush()

    now = datetime.now()
    db.session.add(UserPosition(
        user_id=user.id, position_id=position.id, amount_paid=Decimal("0.00"),
        activated_at=now - timedelta(minutes=1), expires_at=now + timedelta(days=30), status="active",
    ))
    user.current_position_id = position.id
    rows = [
        Video(title=f"Race {n}", url=f"https://cdn.example.com/race-{n}.mp4", duration=100,
              available_from=now - timedelta(days=1))
        for n in range(videos)
    ]
    db.session.add_all(rows)
    db.session.commit()
    return user.id, [v.id for v in rows]


def _submit_together(app, user_id, video_ids):
    barrier = threading.Barrier(len(video_ids))
    results = []
    results_lock = threading.Lock()

    def run(video_id):
        with app.app_context():
            barrier.wait()
            result = VideoTaskService.submit_video_watch(user_id, video_id, 90, interactions=["play"])
            with results_lock:
                results.append(result)

    threads = [threading.Thread(target=run, args=(video_id,)) for video_id in video_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results


class TestConcurrentSubmissions:

    def test_same_video_twice_at_once_pays_once(self, file_app):
        user_id, (video_id,) = _setup_worker(tasks_per_day=5, videos=1)

        results = _submit_together(file_app, user_id, [video_id, video_id])

        assert sorted(r["success"] for r in results) == [False, True]
        rejected = next(r for r in results if not r["success"])
        assert rejected["error"] == "Video already watched today"
        db.session.expire_all()
        assert WalletTransaction.query.filter_by(user_id=user_id, type=TransactionType.TASK_INCOME).count() == 1
        assert UserVideoTask.query.filter_by(user_id=user_id).count() == 1
        assert db.session.get(User, user_id).wallet_balance == Decimal("2.00")

    def test_last_quota_slot_goes_to_one_submission(self, file_app):
        user_id, (done, first, second) = _setup_worker(tasks_per_day=2, videos=3)
        now = datetime.now()
        db.session.add(UserVideoTask(
            user_id=user_id, video_id=done, watched_at=now, watch_date=now.date(),
            watch_duration=Decimal("90.00"), reward_earned=Decimal("2.00"), is_verified=True,
        ))
        db.session.commit()

        results = _submit_together(file_app, user_id, [first, second])

        assert sorted(r["success"] for r in results) == [False, True]
        rejected = next(r for r in results if not r["success"])
        assert rejected["error"] == "Daily task limit reached"
        db.session.expire_all()
        assert UserVideoTask.query.filter_by(user_id=user_id).count() == 2
        assert WalletTransaction.query.filter_by(user_id=user_id, type=TransactionType.TASK_INCOME).count() == 1
