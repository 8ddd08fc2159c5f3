"""
Activity: Agent — builds the task prompt for a bead and runs the external
coding agent CLI on it.

The agent is a black box: success means the process exited 0 before the
hard runtime ceiling. Anything else (non-zero exit, timeout, spawn error, an
open circuit breaker) is reported as a failed invocation, never raised.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from config import Settings
from features.beads.models import SuiteResult, WorkItem
from features.resilience import BreakerRegistry
from utils.process import run_process, truncate

log = logging.getLogger(__name__)


class AgentUnavailableError(RuntimeError):
    """The agent CLI is not installed; the loop must not start."""


@dataclass
class AgentPreset:
    """How to call one agent CLI: binary, flags, and where the prompt goes."""
    name: str
    command: str
    args: list[str] = field(default_factory=list)
    prompt_via: str = "arg"  # "arg" (last argv item) or "stdin"


PRESETS: dict[str, AgentPreset] = {
    "claude": AgentPreset("claude", "claude", ["-p", "--dangerously-skip-permissions"]),
    "kimi": AgentPreset("kimi", "kimi", ["--yolo"], prompt_via="stdin"),
    "codex": AgentPreset(
        "codex",
        "codex",
        ["exec", "--dangerously-bypass-approvals-and-sandbox", "--skip-git-repo-check", "-"],
        prompt_via="stdin",
    ),
}


@dataclass
class AgentRun:
    """Outcome of one agent invocation."""
    success: bool
    exit_code: int | None = None
    reason: str = ""
    duration_sec: float = 0.0
    log_file: str | None = None


def build_prompt(bead: WorkItem, prior: SuiteResult | None, iteration: int) -> str:
    """
    Build the task prompt for one iteration.

    Lists every verifier by name and command. When a prior suite exists, only
    the failed verifiers' names and reasons are added (no captured output).
    """
    verifier_lines = "\n".join(f"- **{v.name}**: `{v.command}`" for v in bead.verifiers)
    sections = [
        f"# Task: {bead.title or bead.id}",
        f"**Bead:** {bead.id}\n**Iteration:** {iteration} of {bead.constraints.max_iterations}",
        f"## Intent\n{bead.intent}",
        "## Definition of Done\n"
        "All of these checks must pass (run from the project root):\n"
        f"{verifier_lines}",
    ]
    if prior is not None:
        failed = prior.failed()
        if failed:
            failure_lines = "\n".join(f"- **{r.name}**: {r.reason}" for r in failed)
            sections.append(
                "## Previous failures\n"
                "The last verification round failed on:\n"
                f"{failure_lines}"
            )
    sections.append(
        "## Instructions\n"
        "Make the changes needed for every check above to pass. "
        "Run the checks yourself before finishing."
    )
    return "\n\n".join(sections) + "\n"


class AgentInvoker:
    """Runs the configured agent CLI for a bead, one iteration at a time."""

    def __init__(self, settings: Settings, breakers: BreakerRegistry | None = None):
        self.settings = settings
        base = PRESETS.get(settings.agent_preset)
        if base is None and not settings.agent_bin:
            raise ValueError(
                f"Unknown agent preset {settings.agent_preset!r} "
                f"(known: {', '.join(sorted(PRESETS))}); set RALPH_AGENT_BIN to use another CLI"
            )
        base = base or AgentPreset(settings.agent_preset, settings.agent_bin)
        self.preset = AgentPreset(
            name=base.name,
            command=settings.agent_bin or base.command,
            args=list(settings.agent_args) if settings.agent_args is not None else list(base.args),
            prompt_via=base.prompt_via,
        )
        self.breakers = breakers or BreakerRegistry(
            failure_threshold=settings.breaker_threshold,
            reset_timeout=settings.breaker_reset_sec,
        )

    def ensure_available(self) -> str:
        """Return the resolved agent binary or raise AgentUnavailableError."""
        path = shutil.which(self.preset.command)
        if path is None:
            raise AgentUnavailableError(f"Agent CLI not found: {self.preset.command}")
        return path

    def command(self, prompt: str) -> list[str]:
        cmd = [self.preset.command, *self.preset.args]
        if self.preset.prompt_via == "arg":
            cmd.append(prompt)
        return cmd

    def invoke(
        self,
        bead: WorkItem,
        prior: SuiteResult | None,
        iteration: int,
        log_dir: Path | None = None,
    ) -> bool:
        return self.run(bead, prior, iteration, log_dir=log_dir).success

    def run(
        self,
        bead: WorkItem,
        prior: SuiteResult | None,
        iteration: int,
        log_dir: Path | None = None,
    ) -> AgentRun:
        breaker = self.breakers.get(self.preset.name)
        if not breaker.allow():
            log.warning("[AGENT] %s: circuit open, skipping invocation %d", self.preset.name, iteration)
            return AgentRun(success=False, reason="circuit breaker open")

        prompt = build_prompt(bead, prior, iteration)
        timeout = self.settings.agent_timeout_sec
        log.info("[AGENT] Invoking %s for %s (iteration %d, timeout %ds)",
                 self.preset.name, bead.id, iteration, timeout)
        try:
            proc = run_process(
                self.command(prompt),
                cwd=self.settings.workspace_root,
                timeout=timeout,
                input_text=prompt if self.preset.prompt_via == "stdin" else None,
            )
        except Exception as e:
            breaker.record_failure()
            log.error("[AGENT] %s could not be started: %s", self.preset.name, e)
            return AgentRun(success=False, reason=f"exception: {e}")

        if proc.timed_out:
            reason = f"timed out after {timeout}s"
        elif proc.exit_code != 0:
            reason = f"exit code {proc.exit_code}"
        else:
            reason = ""
        run = AgentRun(
            success=not reason,
            exit_code=proc.exit_code,
            reason=reason,
            duration_sec=proc.duration_sec,
        )

        if run.success:
            breaker.record_success()
            log.info("[AGENT] %s finished in %.1fs", self.preset.name, proc.duration_sec)
        else:
            breaker.record_failure()
            log.warning("[AGENT] %s failed: %s", self.preset.name, reason)
            if proc.stderr.strip():
                log.warning("[AGENT] stderr: %s", truncate(proc.stderr.strip(), 500))

        if log_dir is not None:
            try:
                run.log_file = str(_write_transcript(log_dir, iteration, prompt, proc.stdout, proc.stderr, run))
            except OSError as e:
                log.warning("[AGENT] Could not write transcript to %s: %s", log_dir, e)
        return run


def _write_transcript(log_dir: Path, iteration: int, prompt: str, stdout: str, stderr: str, run: AgentRun) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / f"agent-{iteration}.log"
    path.write_text(
        f"# exit_code={run.exit_code} success={run.success} reason={run.reason or '-'} "
        f"duration={run.duration_sec}s\n\n"
        f"## Prompt\n{prompt}\n## Stdout\n{stdout}\n## Stderr\n{stderr}",
        encoding="utf-8",
    )
    return path
