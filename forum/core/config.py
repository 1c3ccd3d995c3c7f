import os


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql://postgres:postgres@db:5432/forum"
)
SQL_ECHO = _flag("SQL_ECHO")

SECRET_KEY = os.getenv("SECRET_KEY", "dev-key")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_EXPIRE_MIN", 60))
REFRESH_EXPIRE_MINUTES = int(os.getenv("REFRESH_EXPIRE_MIN", 10080))

# chat core -> auth service
AUTH_SERVICE_URL = os.getenv("AUTH_SERVICE_URL", "http://localhost:8080").rstrip("/")
VERIFY_TIMEOUT_SECONDS = float(os.getenv("VERIFY_TIMEOUT_SECONDS", 5))

CHAT_MESSAGE_TTL_MINUTES = int(os.getenv("CHAT_MESSAGE_TTL_MINUTES", 15))
CHAT_DEFAULT_TTL_HOURS = int(os.getenv("CHAT_DEFAULT_TTL_HOURS", 24))
CHAT_BACKLOG_LIMIT = int(os.getenv("CHAT_BACKLOG_LIMIT", 50))
CHAT_SWEEP_INTERVAL_SECONDS = float(os.getenv("CHAT_SWEEP_INTERVAL_SECONDS", 60))
WS_IDLE_TIMEOUT_SECONDS = float(os.getenv("WS_IDLE_TIMEOUT_SECONDS", 60))

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://127.0.0.1:5173",
    ).split(",")
    if o.strip()
]

SENTRY_DSN = os.getenv("SENTRY_DSN")
ENVIRONMENT = os.getenv("ENVIRONMENT", "production")
RELEASE = os.getenv("RELEASE")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
