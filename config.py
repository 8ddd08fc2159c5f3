"""
Configuration — loads settings from environment / .env file.

Module-level constants mirror the environment; `load_settings()` snapshots
them into a `Settings` object that is passed explicitly to the loop, the
store, and the agent invoker.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
WORKSPACE_ROOT = Path(os.getenv("RALPH_WORKSPACE_ROOT", "") or os.getcwd())
BEADS_DIR = Path(os.getenv("RALPH_BEADS_DIR", ".beads/ralph"))
EVIDENCE_DIR = Path(os.getenv("RALPH_EVIDENCE_DIR", ".ralph/evidence"))
RUNS_DIR = Path(os.getenv("RALPH_RUNS_DIR", ".ralph/runs"))

# Work-item store: "json" (one file per bead) or "bd" (external tracker CLI)
STORE_BACKEND = os.getenv("RALPH_STORE", "json")
BD_BIN = os.getenv("RALPH_BD_BIN", "bd")

# Agent
AGENT_PRESET = os.getenv("RALPH_AGENT", "claude")
AGENT_BIN = os.getenv("RALPH_AGENT_BIN", "")
AGENT_ARGS = os.getenv("RALPH_AGENT_ARGS", "")
AGENT_TIMEOUT_SEC = int(os.getenv("RALPH_AGENT_TIMEOUT", "600"))

# Loop
MAX_ITERATIONS = int(os.getenv("RALPH_MAX_ITERATIONS", "10"))
INITIAL_BACKOFF_SEC = int(os.getenv("RALPH_INITIAL_BACKOFF", "30"))
BACKOFF_CAP_SEC = int(os.getenv("RALPH_BACKOFF_CAP", "300"))
VERIFIER_TIMEOUT_SEC = int(os.getenv("RALPH_VERIFIER_TIMEOUT", "300"))

# Circuit breaker around the agent CLI (threshold 0 disables it)
BREAKER_THRESHOLD = int(os.getenv("RALPH_BREAKER_THRESHOLD", "5"))
BREAKER_RESET_SEC = float(os.getenv("RALPH_BREAKER_RESET", "600"))

# Postgres attempt history (empty disables it)
DATABASE_URL = os.getenv("DATABASE_URL", "")

# Temporal
TEMPORAL_HOST = os.getenv("TEMPORAL_HOST", "localhost:7233")
TEMPORAL_TASK_QUEUE = "ralph-runner-queue"
TEMPORAL_NAMESPACE = "default"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Max characters of verifier/agent output kept in logs and persisted results
MAX_OUTPUT_CHARS = 4_000


@dataclass
class Settings:
    """Explicit runtime configuration for one loop controller."""
    workspace_root: Path = field(default_factory=lambda: WORKSPACE_ROOT)
    beads_dir: Path = field(default_factory=lambda: BEADS_DIR)
    evidence_dir: Path = field(default_factory=lambda: EVIDENCE_DIR)
    runs_dir: Path = field(default_factory=lambda: RUNS_DIR)
    store_backend: str = STORE_BACKEND
    bd_bin: str = BD_BIN
    agent_preset: str = AGENT_PRESET
    agent_bin: str = AGENT_BIN
    agent_args: list[str] | None = None
    agent_timeout_sec: int = AGENT_TIMEOUT_SEC
    max_iterations: int = MAX_ITERATIONS
    initial_backoff_sec: int = INITIAL_BACKOFF_SEC
    backoff_cap_sec: int = BACKOFF_CAP_SEC
    verifier_timeout_sec: int = VERIFIER_TIMEOUT_SEC
    breaker_threshold: int = BREAKER_THRESHOLD
    breaker_reset_sec: float = BREAKER_RESET_SEC
    database_url: str = DATABASE_URL
    max_output_chars: int = MAX_OUTPUT_CHARS

    def resolve(self, path: Path) -> Path:
        """Resolve a configured path against the workspace root."""
        path = Path(path)
        if path.is_absolute():
            return path
        return Path(self.workspace_root) / path


def load_settings(**overrides) -> Settings:
    """Build a Settings snapshot from the environment, applying overrides."""
    settings = Settings(agent_args=shlex.split(AGENT_ARGS) if AGENT_ARGS else None)
    overrides = {k: v for k, v in overrides.items() if v is not None}
    return replace(settings, **overrides)
