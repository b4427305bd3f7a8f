# /companion/config.py
"""
Centralized configuration for the companion turn pipeline.
Includes model names, generation budgets, memory limits, paths and safety thresholds.
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Generative Text Backend ---
USE_API_LLM = _env_bool("USE_API_LLM", False)              # True for Groq API, False for local Ollama
LOCAL_MODEL_NAME = os.getenv("LOCAL_MODEL_NAME", "llama3.2:3b")
API_MODEL_NAME = os.getenv("API_MODEL_NAME", "llama-3.3-70b-versatile")
GROQ_API_KEY = os.getenv("GROQ_API_KEY", "")
LLM_TIMEOUT_S = _env_float("LLM_TIMEOUT_S", 30.0, minimum=0.01)
LLM_MAX_RETRIES = _env_int("LLM_MAX_RETRIES", 1, minimum=0)
LLM_MAX_WORKERS = _env_int("LLM_MAX_WORKERS", 8, minimum=1)

# Extraction favors consistency, replies favor natural variation.
EXTRACTION_TEMPERATURE = _env_float("EXTRACTION_TEMPERATURE", 0.1)
EXTRACTION_MAX_TOKENS = _env_int("EXTRACTION_MAX_TOKENS", 400, minimum=64)
EXTRACTION_CONTEXT_TURNS = _env_int("EXTRACTION_CONTEXT_TURNS", 6, minimum=1)
RESPONSE_TEMPERATURE = _env_float("RESPONSE_TEMPERATURE", 0.7)
RESPONSE_MAX_TOKENS = _env_int("RESPONSE_MAX_TOKENS", 260, minimum=32)
RESPONSE_CONTEXT_TURNS = _env_int("RESPONSE_CONTEXT_TURNS", 10, minimum=1)
RESPONSE_MAX_SENTENCES_PER_PARAGRAPH = _env_int("RESPONSE_MAX_SENTENCES_PER_PARAGRAPH", 3, minimum=1)
REVIEW_TEMPERATURE = _env_float("REVIEW_TEMPERATURE", 0.2)
REVIEW_MAX_TOKENS = _env_int("REVIEW_MAX_TOKENS", 600, minimum=64)

# --- Session Memory Tuning ---
MEMORY_EMOTION_LIMIT = _env_int("MEMORY_EMOTION_LIMIT", 20)
MEMORY_TOPIC_LIMIT = _env_int("MEMORY_TOPIC_LIMIT", 25)
MEMORY_TECHNIQUE_LIMIT = _env_int("MEMORY_TECHNIQUE_LIMIT", 10)
MEMORY_PATTERN_LIMIT = _env_int("MEMORY_PATTERN_LIMIT", 15)
MEMORY_RECENT_TURN_LIMIT = _env_int("MEMORY_RECENT_TURN_LIMIT", 10, minimum=2)
MEMORY_CACHE_MAX_SESSIONS = _env_int("MEMORY_CACHE_MAX_SESSIONS", 256)
PROGRESS_STEP_PER_TURN = _env_int("PROGRESS_STEP_PER_TURN", 5, minimum=0)
TRUST_BASELINE = _env_int("TRUST_BASELINE", 50, minimum=0)
TRUST_NAME_DISCLOSURE_BONUS = _env_int("TRUST_NAME_DISCLOSURE_BONUS", 10, minimum=0)

# --- Safety & Validation ---
RISK_ALERT_THRESHOLD = _env_float("RISK_ALERT_THRESHOLD", 4.0, minimum=0.0)
MAX_UTTERANCE_CHARS = _env_int("MAX_UTTERANCE_CHARS", 4000, minimum=64)
EMPTY_SESSION_GRACE_S = _env_int("EMPTY_SESSION_GRACE_S", 30 * 60, minimum=0)

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/companion/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
_DATA_DIR = _BASE_DIR / "data"

CACHE_DIR = Path(os.getenv("CACHE_DIR", str(_DATA_DIR / "runtime_cache")))
DB_PATH = Path(os.getenv("DB_PATH", str(CACHE_DIR / "conversations.sqlite")))
METRICS_DIR = Path(os.getenv("METRICS_DIR", str(CACHE_DIR / "metrics")))
POLICY_PATH = os.getenv("POLICY_PATH", "")

# --- Create necessary directories ---
CACHE_DIR.mkdir(parents=True, exist_ok=True)
DB_PATH.parent.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(CACHE_DIR / "app.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)
