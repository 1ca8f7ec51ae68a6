"""
Central configuration — reads from .env file.

API keys are NOT configured here: each user stores their own key via the bot
(/setkey), see key_store.py. GOOGLE_API_KEY / OPENAI_API_KEY / ANTHROPIC_API_KEY
in .env are only used as a bootstrap fallback when a user has not set one.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes")


# ── Telegram ──────────────────────────────────────────────────────────────────
# Required to run the bot; the identify proxy can run without it.
TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()

# ── Storage ───────────────────────────────────────────────────────────────────
DATA_DIR: str = os.getenv("DATA_DIR", "data")

# ── Capture wizard ────────────────────────────────────────────────────────────
# Number of photos per scan: 1 = front label, 2 = back / barcode
SCAN_STEPS: int = int(os.getenv("SCAN_STEPS", "2"))

# Cold-start policy: resume a half-finished scan after a restart (true) or
# always start from step 1 (false).
RESUME_SESSIONS: bool = _bool("RESUME_SESSIONS", "true")

# ── Image normalisation ───────────────────────────────────────────────────────
# Long edge cap in pixels. 1024 keeps label text readable for the model.
MAX_IMAGE_EDGE: int = int(os.getenv("MAX_IMAGE_EDGE", "1024"))
# Lossy quality on a 0–1 scale (0.8 ≈ Pillow quality 80)
JPEG_QUALITY: float = float(os.getenv("JPEG_QUALITY", "0.8"))

# ── Identity extraction ───────────────────────────────────────────────────────
#   google     → Gemini via google-genai (default)
#   openai     → GPT-4o family via openai
#   anthropic  → Claude via anthropic
EXTRACTION_PROVIDER: str = os.getenv("EXTRACTION_PROVIDER", "google").strip().lower()
# Blank = provider default
EXTRACTION_MODEL: str = os.getenv("EXTRACTION_MODEL", "").strip()
EXTRACTION_TIMEOUT: float = float(os.getenv("EXTRACTION_TIMEOUT", "60"))

# Below this confidence the result is shown as "not identified" + search links
CONFIDENCE_THRESHOLD: float = float(os.getenv("CONFIDENCE_THRESHOLD", "0.4"))

# Language the model should answer in
RESPONSE_LANGUAGE: str = os.getenv("RESPONSE_LANGUAGE", "English")

# Result mode:
#   advice  → the model answers usage / dosage directly, with search fallback links
#   lookup  → extracted identity is resolved against openFDA
RESULT_MODE: str = os.getenv("RESULT_MODE", "advice").strip().lower()

# ── openFDA lookup ────────────────────────────────────────────────────────────
OPENFDA_BASE_URL: str = os.getenv("OPENFDA_BASE_URL", "https://api.fda.gov").rstrip("/")
LOOKUP_TIMEOUT: float = float(os.getenv("LOOKUP_TIMEOUT", "15"))

# ── Identify proxy (POST /api/identify) ──────────────────────────────────────
IDENTIFY_SERVER_ENABLED: bool = _bool("IDENTIFY_SERVER_ENABLED", "true")
IDENTIFY_PORT: int = int(os.getenv("IDENTIFY_PORT", os.getenv("PORT", "3001")))

# ── Bot behaviour ─────────────────────────────────────────────────────────────
# Show provider / latency / cost line under results (useful during development)
SHOW_COST_INFO: bool = _bool("SHOW_COST_INFO", "false")

# Per-user photo rate limit
RATE_MAX_REQUESTS: int = int(os.getenv("RATE_MAX_REQUESTS", "10"))
RATE_WINDOW_SECS: int = int(os.getenv("RATE_WINDOW_SECS", "60"))
