"""
Test configuration and fixtures
"""
import itertools
import os
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="watchearn-logs-"))

import pytest

from app import create_app
from config import Config
from extensions import db
from models import (
    User, UserStatus, Position, UserPosition, Video, UserVideoTask, TransactionType,
)
from rewards.ledger import RewardLedger
from rewards.referral_tree import ReferralHierarchyIndex
from seed import seed_catalog


class TestConfig(Config):
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    REDIS_URL = None
    LOG_DIR = os.environ["LOG_DIR"]
    ANTI_CHEAT_MIN_SECURITY_SCORE = None


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        seed_catalog(with_videos=False)
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def position(app):
    """Look up a seeded position by level."""
    def _get(level):
        return Position.query.filter_by(level=level).one()
    return _get


@pytest.fixture
def make_position(app):
    counter = itertools.count(100)

    def _make(tasks_per_day=10, unit_price="2.00", price="0.00", validity_days=30):
        level = next(counter)
        pos = Position(
            name=f"Custom-{level}",
            level=level,
            tasks_per_day=tasks_per_day,
            unit_price=Decimal(unit_price),
            price=Decimal(price),
            validity_days=validity_days,
        )
        db.session.add(pos)
        db.session.commit()
        return pos
    return _make


@pytest.fixture
def give_position(app):
    """Attach a position directly, bypassing the purchase flow."""
    def _give(user, pos, days=30, activated_at=None):
        activated_at = activated_at or datetime.now() - timedelta(minutes=1)
        assignment = UserPosition(
            user_id=user.id,
            position_id=pos.id,
            amount_paid=Decimal("0.00"),
            activated_at=activated_at,
            expires_at=activated_at + timedelta(days=days),
            status="active",
        )
        db.session.add(assignment)
        user.current_position_id = pos.id
        db.session.commit()
        return assignment
    return _give


@pytest.fixture
def make_user(app):
    counter = itertools.count(1)

    def _make(referrer=None, balance=None, status=UserStatus.ACTIVE, password="secret123"):
        n = next(counter)
        user = User(
            username=f"user{n}",
            email=f"user{n}@example.com",
            referral_code=f"CODE{n:04d}",
            referred_by=referrer.id if referrer else None,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        if referrer is not None:
            ReferralHierarchyIndex.build_hierarchy_for_new_user(user.id, referrer.id)
        if balance:
            RewardLedger.credit(user.id, balance, TransactionType.CREDIT, description="Test top-up")
        if status != UserStatus.ACTIVE:
            user.status = status
            db.session.commit()
        return user
    return _make


@pytest.fixture
def make_video(app):
    counter = itertools.count(1)

    def _make(duration=100, position=None, **kwargs):
        n = next(counter)
        video = Video(
            title=f"Video {n}",
            url=f"https://cdn.example.com/video-{n}.mp4",
            duration=duration,
            position_id=position.id if position else None,
            available_from=kwargs.pop("available_from", datetime.now() - timedelta(days=1)),
            **kwargs,
        )
        db.session.add(video)
        db.session.commit()
        return video
    return _make


@pytest.fixture
def add_task(app):
    """Insert a completed task row without going through the watch flow."""
    def _add(user, video, watched_at=None, reward="0.20"):
        watched_at = watched_at or datetime.now()
        task = UserVideoTask(
            user_id=user.id,
            video_id=video.id,
            watched_at=watched_at,
            watch_date=watched_at.date(),
            watch_duration=video.duration,
            reward_earned=Decimal(reward),
            is_verified=True,
        )
        db.session.add(task)
        db.session.commit()
        return task
    return _add


@pytest.fixture
def login(client):
    def _login(user, password="secret123"):
        return client.post("/api/login", json={"email": user.email, "password": password})
    return _login
