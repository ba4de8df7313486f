"""Configuration loading and defaults.

Reads from config.toml at the project root, with environment variable overrides.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from dotenv import load_dotenv

# Look for .env in the package's parent directory (project root)
_project_root = Path(__file__).resolve().parent.parent
load_dotenv(_project_root / ".env")
load_dotenv()  # also check cwd

# ---------------------------------------------------------------------------
# Load config.toml
# ---------------------------------------------------------------------------

_toml_path = _project_root / "config.toml"
_cfg: dict = {}
if _toml_path.exists():
    with open(_toml_path, "rb") as f:
        _cfg = tomllib.load(f)

_server = _cfg.get("server", {})
_orchestrator = _cfg.get("orchestrator", {})
_context = _cfg.get("context", {})

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

# Created lazily by LocalSpaceStorage
BASE_DIR = Path(os.getenv("CONDUCTOR_BASE_DIR", _orchestrator.get("base_dir", str(Path.cwd() / "spaces"))))

# ---------------------------------------------------------------------------
# Provider API keys (env-only, never in toml)
# ---------------------------------------------------------------------------

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")

# ---------------------------------------------------------------------------
# Orchestrator defaults
# ---------------------------------------------------------------------------

DEFAULT_MODEL = os.getenv("CONDUCTOR_DEFAULT_MODEL", _orchestrator.get("default_model", "anthropic/claude-sonnet-4-5"))
DEFAULT_TEMPERATURE = float(os.getenv("CONDUCTOR_TEMPERATURE", _orchestrator.get("temperature", 0.7)))
DEFAULT_MAX_TOKENS = int(os.getenv("CONDUCTOR_MAX_TOKENS", _orchestrator.get("max_tokens", 4096)))
MAX_WORKER_ITERATIONS = int(os.getenv("CONDUCTOR_MAX_ITERATIONS", _orchestrator.get("max_iterations", 10)))

# Parallel execution
MAX_CONCURRENCY = int(os.getenv("CONDUCTOR_MAX_CONCURRENCY", _orchestrator.get("max_concurrency", 3)))

# Outputs longer than this (in characters) are stored as artifacts
ARTIFACT_THRESHOLD = int(os.getenv("CONDUCTOR_ARTIFACT_THRESHOLD", _orchestrator.get("artifact_threshold", 500)))
RESULT_PREVIEW_CHARS = int(os.getenv("CONDUCTOR_RESULT_PREVIEW", _orchestrator.get("result_preview", 200)))

# Number of trailing chat messages passed to direct answers and delegations
RECENT_MESSAGE_WINDOW = int(os.getenv("CONDUCTOR_RECENT_WINDOW", _orchestrator.get("recent_window", 4)))

# ---------------------------------------------------------------------------
# Context budgets
# ---------------------------------------------------------------------------

DEFAULT_COMPLETION_TOKENS = int(os.getenv("CONDUCTOR_COMPLETION_TOKENS", _context.get("completion_tokens", 4000)))
CONTEXT_OVERHEAD_TOKENS = int(os.getenv("CONDUCTOR_CONTEXT_OVERHEAD", _context.get("overhead_tokens", 500)))

# Model family prefix -> (total input limit, completion reserve). Longest prefix wins.
MODEL_CONTEXT_LIMITS: dict[str, tuple[int, int]] = {
    "claude": (200_000, 8_000),
    "gpt-4o": (128_000, 4_000),
    "gpt-4.1": (1_000_000, 8_000),
    "gpt-4": (8_192, 2_000),
    "o1": (200_000, 32_000),
    "o3": (200_000, 32_000),
    "o4": (200_000, 32_000),
    "deepseek-reasoner": (64_000, 16_000),
    "deepseek": (64_000, 4_000),
}
DEFAULT_CONTEXT_LIMIT: tuple[int, int] = (128_000, DEFAULT_COMPLETION_TOKENS)

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

SERVER_HOST = os.getenv("CONDUCTOR_HOST", _server.get("host", "0.0.0.0"))
SERVER_PORT = int(os.getenv("CONDUCTOR_PORT", _server.get("port", 8000)))
