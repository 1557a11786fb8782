import os

# ---------------- Database ----------------
DATABASE_URL = os.getenv("DATABASE_URL")
DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))
DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "10000"))

# ---------------- Tokens ----------------
SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
TOKEN_AUDIENCE = os.getenv("TOKEN_AUDIENCE") or None

# ---------------- Square ----------------
SQUARE_ACCESS_TOKEN = os.getenv("SQUARE_ACCESS_TOKEN")
SQUARE_LOCATION_ID = os.getenv("SQUARE_LOCATION_ID")
SQUARE_ENVIRONMENT = os.getenv("SQUARE_ENVIRONMENT", "sandbox")
SQUARE_API_VERSION = os.getenv("SQUARE_API_VERSION", "2024-01-18")
SQUARE_BASE_URL = (
    "https://connect.squareup.com"
    if SQUARE_ENVIRONMENT == "production"
    else "https://connect.squareupsandbox.com"
)
SQUARE_CONNECT_TIMEOUT = float(os.getenv("SQUARE_CONNECT_TIMEOUT", "5"))
SQUARE_READ_TIMEOUT = float(os.getenv("SQUARE_READ_TIMEOUT", "15"))

# ---------------- Request limits ----------------
MAX_AMOUNT_CENTS = int(os.getenv("MAX_AMOUNT_CENTS", "5000000"))  # $50,000
USER_RATE_LIMIT = int(os.getenv("USER_RATE_LIMIT", "10"))  # per hour
GLOBAL_RATE_LIMIT = int(os.getenv("GLOBAL_RATE_LIMIT", "50"))  # per hour
REPLAY_WINDOW_SECONDS = float(os.getenv("REPLAY_WINDOW_SECONDS", "120"))
REPLAY_FUTURE_SKEW_SECONDS = float(os.getenv("REPLAY_FUTURE_SKEW_SECONDS", "30"))

# ---------------- HTTP ----------------
CORS_ALLOW_ORIGINS = [o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
