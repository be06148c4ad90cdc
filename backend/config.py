from dotenv import load_dotenv
import os
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

def env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default

def env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default

# MongoDB
MONGO_URL = os.environ.get("MONGO_URL", "")
DB_NAME = os.environ.get("DB_NAME", "patient_context")

# Generative backend (delta analysis)
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
DELTA_ANALYZER_MODEL = os.environ.get("DELTA_ANALYZER_MODEL", "gpt-4o")
DELTA_ANALYZER_TIMEOUT_SECONDS = env_float("DELTA_ANALYZER_TIMEOUT_SECONDS", 45.0)
DELTA_ANALYZER_MAX_ATTEMPTS = env_int("DELTA_ANALYZER_MAX_ATTEMPTS", 3)
DELTA_ANALYZER_RETRY_DELAY_SECONDS = env_float("DELTA_ANALYZER_RETRY_DELAY_SECONDS", 1.0)

# Medication reminders
DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "America/Chicago")
REMINDER_DUE_WINDOW_MINUTES = env_int("REMINDER_DUE_WINDOW_MINUTES", 7)
REMINDER_SEND_LOCK_MINUTES = env_int("REMINDER_SEND_LOCK_MINUTES", 30)
REMINDER_PUSH_WEBHOOK_URL = os.environ.get("REMINDER_PUSH_WEBHOOK_URL", "").strip()
SOFT_DELETE_RETENTION_DAYS = env_int("SOFT_DELETE_RETENTION_DAYS", 90)

# Internal trigger endpoints (scheduler, visit pipeline, operators)
INTERNAL_API_TOKEN = os.environ.get("INTERNAL_API_TOKEN", "")
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")
