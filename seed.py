# seed.py
# Usage: flask --app wsgi seed-catalog
from models import db, Position, ReferralReward, Video
from rewards.config import DEFAULT_POSITIONS, DEFAULT_REFERRAL_REWARDS

DEMO_VIDEOS = (
    ("We Are Going On Bullrun", 180),
    ("For Bigger Joyrides", 240),
    ("For Bigger Meltdowns", 200),
    ("For Bigger Fun", 160),
    ("For Bigger Escapes", 220),
    ("For Bigger Blazes", 190),
    ("Digital Marketing Mastery", 60),
    ("Investment Strategies", 320),
)

DEMO_VIDEO_BASE_URL = "https://storage.googleapis.com/gtv-videos-bucket/sample"


def seed_catalog(with_videos=True):
    """Insert missing catalog rows; existing rows are left as they are."""
    created = {"positions": 0, "rewards": 0, "videos": 0}

    for level, name, tasks_per_day, unit_price, price, validity_days in DEFAULT_POSITIONS:
        if Position.query.filter_by(level=level).first():
            continue
        db.session.add(Position(
            level=level,
            name=name,
            tasks_per_day=tasks_per_day,
            unit_price=unit_price,
            price=price,
            validity_days=validity_days,
            description=f"{name}: {tasks_per_day} tasks per day at {unit_price} each",
        ))
        created["positions"] += 1

    for trigger_event, name, amount, description in DEFAULT_REFERRAL_REWARDS:
        if ReferralReward.query.filter_by(trigger_event=trigger_event).first():
            continue
        db.session.add(ReferralReward(
            trigger_event=trigger_event,
            name=name,
            reward_amount=amount,
            description=description,
        ))
        created["rewards"] += 1

    if with_videos:
        for title, duration in DEMO_VIDEOS:
            if Video.query.filter_by(title=title).first():
                continue
            slug = title.replace(" ", "")
            db.session.add(Video(
                title=title,
                url=f"{DEMO_VIDEO_BASE_URL}/{slug}.mp4",
                thumbnail_url=f"{DEMO_VIDEO_BASE_URL}/images/{slug}.jpg",
                duration=duration,
            ))
            created["videos"] += 1

    db.session.commit()
    return created
