import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_READ_URL = os.environ.get("DATABASE_READ_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "race_engine.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", True)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-race-engine")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_JSON = _bool_env("LOG_JSON", True)

    RACE_SWEEPER_ENABLED = _bool_env("RACE_SWEEPER_ENABLED", True)
    RACE_SWEEPER_INTERVAL_SECONDS = _int_env("RACE_SWEEPER_INTERVAL_SECONDS", 10)
    RACE_SWEEPER_LIMIT = _int_env("RACE_SWEEPER_LIMIT", 200)
    RACE_SWEEPER_DELIVER_BROADCASTS = _bool_env("RACE_SWEEPER_DELIVER_BROADCASTS", False)
    RACE_CLOCK = None

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL must be set in production.")
        if env == "production" and self.SECRET_KEY == "dev-secret-race-engine":
            raise RuntimeError("SECRET_KEY is insecure for production.")
