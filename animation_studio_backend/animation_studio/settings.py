import os
from dotenv import load_dotenv
import logging

# Load .env file if it exists (for local development)
env_path = os.path.join(os.path.dirname(__file__), "..", ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Configure logging
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)

if os.path.exists(env_path):
    logger.info("Loaded .env file for local development")
else:
    logger.info("No .env file found, using environment variables")

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_API_BASE = os.getenv("GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta").rstrip("/")
GEMINI_TIMEOUT_S = float(os.getenv("GEMINI_TIMEOUT_S", "120"))
GEMINI_TEMPERATURE = float(os.getenv("GEMINI_TEMPERATURE", "0.4"))

# "stub" returns SAMPLE_VIDEO_URL for every scene; "replicate" calls a hosted video model.
VIDEO_BACKEND = os.getenv("VIDEO_BACKEND", "stub").strip().lower()
SAMPLE_VIDEO_URL = os.getenv(
    "SAMPLE_VIDEO_URL",
    "https://storage.googleapis.com/gtv-videos-bucket/sample/ForBiggerFun.mp4",
)
REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN", "")
REPLICATE_VIDEO_MODEL = os.getenv("REPLICATE_VIDEO_MODEL", "")
REPLICATE_POLL_INTERVAL_MS = int(os.getenv("REPLICATE_POLL_INTERVAL_MS", "1500"))
REPLICATE_POLL_TIMEOUT_S = int(os.getenv("REPLICATE_POLL_TIMEOUT_S", "300"))

DATA_DIR = os.getenv("DATA_DIR", "data")
PROJECTS_KEY = os.getenv("PROJECTS_KEY", "animation-projects")

MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "20"))
PDF_COVER_DPI = int(os.getenv("PDF_COVER_DPI", "110"))

# Comma-separated list of allowed origins for CORS (e.g., "http://localhost:5173,https://studio.example.com").
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "").strip()
if _allowed_origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _allowed_origins_env.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = ["*"]


def has_all_keys() -> bool:
    missing = []
    if not GEMINI_API_KEY:
        missing.append("GEMINI_API_KEY")
    if VIDEO_BACKEND == "replicate":
        if not REPLICATE_API_TOKEN: missing.append("REPLICATE_API_TOKEN")
        if not REPLICATE_VIDEO_MODEL: missing.append("REPLICATE_VIDEO_MODEL")
    if missing:
        logger.warning(f"Missing API keys: {', '.join(missing)}")
    return not missing
