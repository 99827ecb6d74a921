"""Runtime configuration, read from the environment once at import."""

import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
    DB_NAME = os.getenv("DB_NAME", "cyberquiz")
    REDIS_URL = os.getenv("REDIS_URL", "")  # empty -> in-memory cache only
    LEADERBOARD_CACHE_TTL = float(os.getenv("LEADERBOARD_CACHE_TTL", "2"))
    MAX_PARTICIPANTS = 1000
    ALLOWED_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    # Admin panel credentials (plaintext compare)
    ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "cyber123")
    JWT_SECRET = os.getenv("JWT_SECRET", "cyberquiz-secret-key-change-in-production")
    JWT_ALGORITHM = "HS256"
    JWT_EXPIRATION_HOURS = 12
    # Quiz pacing
    ANSWER_WINDOW_SEC = 15
    ANSWER_GRACE_SEC = float(os.getenv("ANSWER_GRACE_SEC", "2"))
    ENFORCE_ANSWER_WINDOW = _env_bool("ENFORCE_ANSWER_WINDOW", True)
    COUNTDOWN_START = 5
    COUNTDOWN_TICK_SEC = float(os.getenv("COUNTDOWN_TICK_SEC", "1.0"))
    STREAM_INTERVAL_SEC = float(os.getenv("STREAM_INTERVAL_SEC", "0.5"))
    STREAM_QUEUE_SIZE = 8
    LEADERBOARD_LIMIT = 20
    DEFAULT_TOTAL_QUESTIONS = 10
    MAX_TOTAL_QUESTIONS = 50
    REWARD_THRESHOLD = 80
    QUESTIONS_FILE = os.getenv("QUESTIONS_FILE", "")


config = Config()
