import os
from dotenv import load_dotenv
load_dotenv()


def _int_list(raw: str) -> list[int]:
    return [int(x) for x in raw.replace(" ", "").split(",") if x]


class Settings:
    APP_NAME = os.getenv("APP_NAME", "starraffle")
    APP_VERSION = os.getenv("APP_VERSION", "0.1.0")
    APP_ENV = os.getenv("APP_ENV", "dev")
    APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
    APP_PORT = int(os.getenv("APP_PORT", "8000"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    DATABASE_URL = os.getenv("DATABASE_URL") or (
        f"mysql+aiomysql://{os.getenv('MYSQL_USER','root')}:{os.getenv('MYSQL_PASSWORD','123456')}"
        f"@{os.getenv('MYSQL_HOST','127.0.0.1')}:{os.getenv('MYSQL_PORT','3306')}/{os.getenv('MYSQL_DB','starraffle')}?charset=utf8mb4"
    )
    REDIS_URL = os.getenv("REDIS_URL") or f"redis://{os.getenv('REDIS_HOST','127.0.0.1')}:{os.getenv('REDIS_PORT','6379')}/{os.getenv('REDIS_DB','0')}"

    JWT_SECRET = os.getenv("JWT_SECRET", "change_me")
    ADMIN_TELEGRAM_IDS = _int_list(os.getenv("ADMIN_TELEGRAM_IDS", ""))

    # memory | redis
    ADMISSION_GATE_BACKEND = os.getenv("ADMISSION_GATE_BACKEND", "memory").lower()
    BID_RATE_POINTS = int(os.getenv("BID_RATE_POINTS", "5"))
    BID_RATE_DURATION = int(os.getenv("BID_RATE_DURATION", "60"))
    BID_RATE_BLOCK = int(os.getenv("BID_RATE_BLOCK", "300"))

    # redis | log
    NOTIFY_BACKEND = os.getenv("NOTIFY_BACKEND", "log").lower()
    NOTIFY_CHANNEL_PREFIX = os.getenv("NOTIFY_CHANNEL_PREFIX", "raffle")

    PAYMENT_BRIDGE_URL = os.getenv("PAYMENT_BRIDGE_URL", "http://127.0.0.1:9000")
    PAYMENT_BRIDGE_TOKEN = os.getenv("PAYMENT_BRIDGE_TOKEN", "")
    PAYMENT_BRIDGE_TIMEOUT = float(os.getenv("PAYMENT_BRIDGE_TIMEOUT", "10"))

    DELIVERY_RETRY_SECONDS = int(os.getenv("DELIVERY_RETRY_SECONDS", "60"))
    DELIVERY_MAX_ATTEMPTS = int(os.getenv("DELIVERY_MAX_ATTEMPTS", "10"))
    DELIVERY_BATCH_LIMIT = int(os.getenv("DELIVERY_BATCH_LIMIT", "100"))
    DELIVERY_CLAIM_TIMEOUT = int(os.getenv("DELIVERY_CLAIM_TIMEOUT", "300"))

    DEFAULT_REQUIRED_PARTICIPANTS = int(os.getenv("DEFAULT_REQUIRED_PARTICIPANTS", "10"))
    DEFAULT_BID_AMOUNT = int(os.getenv("DEFAULT_BID_AMOUNT", "1"))
    DEFAULT_WINNER_SHARE = os.getenv("DEFAULT_WINNER_SHARE", "0.70")

settings = Settings()
