import os
import dotenv
from typing import Any, Dict, List

# Load env
dotenv.load_dotenv()


def env_ms(name: str, default: int) -> int:
    """Millisecond setting; 0, negative or empty falls back to the default."""
    value = int(os.getenv(name) or default)
    return value if value > 0 else default


# Server
PORT = int(os.getenv("PORT", "3000"))
APP_ENV = os.getenv("APP_ENV", "development")
API_KEY = os.getenv("APP_API_KEY")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")]

# Gemini CLI
GEMINI_CLI_COMMAND = os.getenv("GEMINI_CLI_COMMAND", "gemini")
GEMINI_DEFAULT_MODEL = os.getenv("GEMINI_DEFAULT_MODEL", "gemini-2.5-flash-lite")
GEMINI_REQUEST_TIMEOUT_MS = env_ms("GEMINI_REQUEST_TIMEOUT_MS", 60000)
GEMINI_MAX_CONCURRENT_REQUESTS = int(os.getenv("GEMINI_MAX_CONCURRENT_REQUESTS", "2"))
GEMINI_KILL_GRACE_MS = env_ms("GEMINI_KILL_GRACE_MS", 5000)
if GEMINI_MAX_CONCURRENT_REQUESTS < 1:
    raise RuntimeError("GEMINI_MAX_CONCURRENT_REQUESTS must be >= 1")

# Streaming UX
STREAM_KEEPALIVE_SECONDS = float(os.getenv("STREAM_KEEPALIVE_SECONDS", "15"))

# Static model catalogue
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {"id": "gemini-2.5-flash-lite", "name": "Gemini 2.5 Flash Lite", "description": "Fastest, low cost"},
    {"id": "gemini-2.5-flash", "name": "Gemini 2.5 Flash", "description": "Balanced performance"},
]
AVAILABLE_MODEL_IDS = [m["id"] for m in AVAILABLE_MODELS]
