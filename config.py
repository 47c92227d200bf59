"""
Runtime configuration for the live buyer-intent monitor.
Everything is read from the environment; a local .env is loaded for development.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Server
PORT = int(os.environ.get("PORT", 3001))
WEBSOCKET_PORT = int(os.environ.get("WEBSOCKET_PORT", 8765))
SERVICE_NAME = "Live Buyer Intel Monitor"
CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "http://localhost:3000,http://localhost:3001").split(",") if o.strip()]
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# LLM Provider: "anthropic", "groq" (cloud), "ollama" (local) or "none"
LLM_PROVIDER = os.environ.get("LLM_PROVIDER", "anthropic")

ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
ANTHROPIC_MODEL = os.environ.get("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022")
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"

GROQ_API_KEY = os.environ.get("GROQ_API_KEY", "")
GROQ_MODEL = os.environ.get("GROQ_MODEL", "llama-3.1-8b-instant")
GROQ_URL = "https://api.groq.com/openai/v1/chat/completions"

OLLAMA_URL = os.environ.get("OLLAMA_URL", "http://localhost:11434/api/generate")
OLLAMA_MODEL = os.environ.get("OLLAMA_MODEL", "qwen2.5:3b")

# "heuristic" or "llm" (llm always falls back to heuristic)
CLASSIFIER = os.environ.get("CLASSIFIER", "heuristic")

# Browser
HEADLESS = _env_bool("HEADLESS", True)
CHROME_EXECUTABLE_PATH = os.environ.get("CHROME_EXECUTABLE_PATH") or None
SAVE_SCREENSHOT = _env_bool("SAVE_SCREENSHOT", False)
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
VIEWPORT = {"width": 1366, "height": 768}
BLOCKED_RESOURCE_TYPES = frozenset({"image", "font", "media", "stylesheet"})

# Platform
PLATFORM_BASE_URL = os.environ.get("PLATFORM_BASE_URL", "https://www.whatnot.com")
PLATFORM_HOST = os.environ.get("PLATFORM_HOST", "whatnot.com")

# Polling / navigation
POLL_INTERVAL = float(os.environ.get("POLL_INTERVAL", 1.5))
QUIET_PERIOD = float(os.environ.get("QUIET_PERIOD", 30))
NAV_TIMEOUT_MS = int(os.environ.get("NAV_TIMEOUT_MS", 45000))
NAV_RETRIES = int(os.environ.get("NAV_RETRIES", 3))
NAV_BACKOFF = float(os.environ.get("NAV_BACKOFF", 1.0))
DISCOVERY_LIMIT = int(os.environ.get("DISCOVERY_LIMIT", 10))
MAX_CONSECUTIVE_FAILURES = int(os.environ.get("MAX_CONSECUTIVE_FAILURES", 10))

# Dedup
DEDUP_MAX_ENTRIES = int(os.environ.get("DEDUP_MAX_ENTRIES", 10000))
DEDUP_TTL_SECONDS = float(os.environ.get("DEDUP_TTL_SECONDS", 300))

# Intent capture
CAPTURE_THRESHOLD = float(os.environ.get("CAPTURE_THRESHOLD", 0.7))
VALUE_PER_SALE = float(os.environ.get("VALUE_PER_SALE", 50))

# Outreach drafting (rate limiting for LLM quotas)
DRAFT_DELAY = float(os.environ.get("DRAFT_DELAY", 1.0))
MAX_DRAFTS = int(os.environ.get("MAX_DRAFTS", 20))
LLM_BATCH_SIZE = 50

# Storage
DATA_DIR = os.environ.get("DATA_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), "data"))


@dataclass(frozen=True)
class MonitorSettings:
    """Per-session knobs for a SessionMonitor."""

    poll_interval: float = POLL_INTERVAL
    quiet_period: float = QUIET_PERIOD
    nav_retries: int = NAV_RETRIES
    nav_backoff: float = NAV_BACKOFF
    nav_timeout_ms: int = NAV_TIMEOUT_MS
    discovery_limit: int = DISCOVERY_LIMIT
    dedup_max_entries: int = DEDUP_MAX_ENTRIES
    dedup_ttl_seconds: float = DEDUP_TTL_SECONDS
    capture_threshold: float = CAPTURE_THRESHOLD
    value_per_sale: float = VALUE_PER_SALE
    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES
    save_screenshot: bool = SAVE_SCREENSHOT
