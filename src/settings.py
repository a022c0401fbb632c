"""Static configuration for telewake.

All user-editable settings (workspace, trigger word, scheduler timing, model,
logging) live in a single JSON file for quick edits without touching Python.
Secrets stay in the environment (.env).
"""

import json
import os

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_PATH = os.path.join(PROJECT_ROOT, "config.json")


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(
            f"Config file not found: {CONFIG_PATH} (copy config.example.json to get started)"
        )

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Workspace root: topic directories, events/ and MEMORY.md live here.
WORKSPACE_DIR = _resolve_path(_CONFIG.get("workspace_dir", "data"))
EVENTS_DIR = os.path.join(WORKSPACE_DIR, "events")

# Where to store the SQLite conversation history.
DB_PATH = _resolve_path(_CONFIG.get("db_path", os.path.join(WORKSPACE_DIR, "history.db")))

# Optional prefix a chat message must start with to reach the bot.
TRIGGER_WORD = _CONFIG.get("trigger_word", "")

# Scheduler timing.
# - DEBOUNCE_MS: window that collapses bursts of file notifications
# - BUSY_RETRY_SECONDS: delay before re-trying an event whose topic is busy
# - BUSY_RETRY_LIMIT: give up after this many retries (null = never)
_scheduler = _CONFIG.get("scheduler", {})
DEBOUNCE_MS = int(_scheduler.get("debounce_ms", 100))
BUSY_RETRY_SECONDS = float(_scheduler.get("busy_retry_seconds", 10))
BUSY_RETRY_LIMIT = _scheduler.get("busy_retry_limit")

# Model used by the turn executor; pricing is USD per million tokens.
_model = _CONFIG.get("model", {})
MODEL_NAME = _model.get("name", "claude-sonnet-4-20250514")
MODEL_BASE_URL = _model.get("base_url")
MODEL_MAX_TOKENS = int(_model.get("max_tokens", 8192))
_pricing = _model.get("pricing", {})
MODEL_INPUT_COST = float(_pricing.get("input", 3))
MODEL_OUTPUT_COST = float(_pricing.get("output", 15))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
