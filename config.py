# ==========================================================================================================
# -------------- Configuration file for the WatchEarn Flask application -------------------------------------
# ==========================================================================================================
import os
from dotenv import load_dotenv


if os.environ.get("FLASK_ENV") != "production":
    load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


class Config:

    SECRET_KEY = os.getenv("SECRET_KEY")
    if not SECRET_KEY:
        raise ValueError("SECRET_KEY must be set in production")

    FLASK_ENV = os.getenv("FLASK_ENV", "production")
    DEBUG = os.getenv("DEBUG", "False").lower() in ("true", "1", "t")
    TESTING = False

    _database_url = os.getenv("DATABASE_URL")
    if not _database_url:
        _database_url = f"sqlite:///{os.path.join(basedir, 'instance', 'watchearn.db')}"

    if _database_url.startswith("postgres://"):
        _database_url = _database_url.replace("postgres://", "postgresql+pg8000://", 1)

    SQLALCHEMY_DATABASE_URI = _database_url
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = (
        {
            "pool_size": 10,
            "max_overflow": 20,
            "pool_pre_ping": True,
            "pool_recycle": 300,
        }
        if not _database_url.startswith("sqlite")
        else {}
    )

    APP_BASE_URL = os.getenv("APP_BASE_URL", "https://watchearn.app")
    LOG_DIR = os.getenv("LOG_DIR", "logs")

    # ------------------------------------------------------------------
    # Reward engine knobs
    # ------------------------------------------------------------------
    # Percentage of a task reward paid to each upline level (A = direct referrer)
    MANAGEMENT_BONUS_RATES = {
        "A_LEVEL": os.getenv("MANAGEMENT_BONUS_RATE_A", "0.10"),
        "B_LEVEL": os.getenv("MANAGEMENT_BONUS_RATE_B", "0.05"),
        "C_LEVEL": os.getenv("MANAGEMENT_BONUS_RATE_C", "0.02"),
    }
    MANAGEMENT_BONUS_DAILY_CAP = os.getenv("MANAGEMENT_BONUS_DAILY_CAP", "50.00")
    MANAGEMENT_BONUS_MONTHLY_CAP = os.getenv("MANAGEMENT_BONUS_MONTHLY_CAP", "1000.00")

    # None keeps the security score audit-only
    ANTI_CHEAT_MIN_SECURITY_SCORE = (
        int(os.getenv("ANTI_CHEAT_MIN_SECURITY_SCORE"))
        if os.getenv("ANTI_CHEAT_MIN_SECURITY_SCORE")
        else None
    )

    DEFAULT_POSITION_LEVEL = int(os.getenv("DEFAULT_POSITION_LEVEL", "0"))
    HIGH_EARNER_THRESHOLD = os.getenv("HIGH_EARNER_THRESHOLD", "50.00")
    WEEKLY_ACTIVITY_VIDEO_COUNT = int(os.getenv("WEEKLY_ACTIVITY_VIDEO_COUNT", "7"))

    MIN_WITHDRAWAL = os.getenv("MIN_WITHDRAWAL", "10.00")
    MAX_WITHDRAWAL = os.getenv("MAX_WITHDRAWAL", "1000.00")

    MAX_FAILED_LOGINS = int(os.getenv("MAX_FAILED_LOGINS", "5"))
    LOCKOUT_MINUTES = int(os.getenv("LOCKOUT_MINUTES", "15"))

    # Dashboard rollups are cached per user; Redis when configured, else in-process
    REDIS_URL = os.getenv("REDIS_URL")
    DASHBOARD_CACHE_TTL = int(os.getenv("DASHBOARD_CACHE_TTL", "30"))
