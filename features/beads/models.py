"""
Data models for the beads feature.

WorkItem ("bead") and its Verifiers are the core domain objects of the Ralph
loop. Parsing from the persisted JSON shape happens in the `from_dict`
constructors, which is where every optional field gets its default.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

DEFAULT_VERIFIER_TIMEOUT = 300


class MalformedBeadError(ValueError):
    """The persisted representation of a bead cannot be used."""


class BeadStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: str | None) -> "BeadStatus":
        if not value or value == "open":
            return cls.PENDING
        try:
            return cls(value)
        except ValueError:
            raise MalformedBeadError(f"unknown status: {value!r}") from None

    @property
    def terminal(self) -> bool:
        return self in (BeadStatus.COMPLETED, BeadStatus.FAILED)


class OnFailure(str, Enum):
    STOP = "stop"
    CONTINUE = "continue"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Expect:
    exit_code: int = 0
    stdout_contains: str | None = None
    stderr_contains: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "Expect":
        data = data or {}
        if not isinstance(data, dict):
            raise MalformedBeadError("verifier 'expect' must be an object")
        try:
            exit_code = int(data.get("exit_code", 0))
        except (TypeError, ValueError):
            raise MalformedBeadError(f"invalid expect.exit_code: {data.get('exit_code')!r}") from None
        for key in ("stdout_contains", "stderr_contains"):
            if data.get(key) is not None and not isinstance(data[key], str):
                raise MalformedBeadError(f"expect.{key} must be a string, got {data[key]!r}")
        return cls(
            exit_code=exit_code,
            stdout_contains=data.get("stdout_contains") or None,
            stderr_contains=data.get("stderr_contains") or None,
        )

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"exit_code": self.exit_code}
        if self.stdout_contains is not None:
            out["stdout_contains"] = self.stdout_contains
        if self.stderr_contains is not None:
            out["stderr_contains"] = self.stderr_contains
        return out


@dataclass
class Verifier:
    """A single automated check: a shell command plus its expected outcome."""
    name: str
    command: str
    expect: Expect = field(default_factory=Expect)
    timeout_seconds: int = DEFAULT_VERIFIER_TIMEOUT
    on_failure: OnFailure = OnFailure.STOP

    @classmethod
    def from_dict(cls, data: dict, default_timeout: int = DEFAULT_VERIFIER_TIMEOUT) -> "Verifier":
        if not isinstance(data, dict):
            raise MalformedBeadError("each verifier must be an object")
        command = data.get("command")
        if not command or not isinstance(command, str):
            raise MalformedBeadError(f"verifier {data.get('name')!r} has no command")
        raw_timeout = data.get("timeout_seconds")
        try:
            timeout = default_timeout if raw_timeout is None else int(raw_timeout)
        except (TypeError, ValueError):
            raise MalformedBeadError(f"invalid timeout_seconds: {raw_timeout!r}") from None
        if timeout <= 0:
            raise MalformedBeadError(f"timeout_seconds must be positive, got {timeout}")
        try:
            on_failure = OnFailure(data.get("on_failure") or OnFailure.STOP.value)
        except ValueError:
            raise MalformedBeadError(f"invalid on_failure: {data.get('on_failure')!r}") from None
        return cls(
            name=str(data.get("name") or command),
            command=command,
            expect=Expect.from_dict(data.get("expect")),
            timeout_seconds=timeout,
            on_failure=on_failure,
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "command": self.command,
            "expect": self.expect.to_dict(),
            "timeout_seconds": self.timeout_seconds,
            "on_failure": self.on_failure.value,
        }


@dataclass
class Constraints:
    max_iterations: int = 10
    time_budget: str | int | None = None

    @classmethod
    def from_dict(cls, data: dict | None, default_max_iterations: int = 10) -> "Constraints":
        data = data or {}
        if not isinstance(data, dict):
            raise MalformedBeadError("'constraints' must be an object")
        raw = data.get("max_iterations")
        if raw is None:
            max_iterations = default_max_iterations
        else:
            try:
                max_iterations = int(raw)
            except (TypeError, ValueError):
                raise MalformedBeadError(f"invalid max_iterations: {raw!r}") from None
        if max_iterations <= 0:
            raise MalformedBeadError(f"max_iterations must be positive, got {max_iterations}")
        return cls(max_iterations=max_iterations, time_budget=data.get("time_budget"))

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"max_iterations": self.max_iterations}
        if self.time_budget is not None:
            out["time_budget"] = self.time_budget
        return out


@dataclass
class RalphMeta:
    """Retry metadata the loop keeps on the bead (persisted as `ralph_meta`)."""
    attempt_count: int = 0
    last_attempt: str | None = None
    backoff_seconds: int = 0
    last_failure_summary: str = ""
    verifier_results: list[dict] = field(default_factory=list)
    failure_reason: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "RalphMeta":
        data = data or {}
        if not isinstance(data, dict):
            raise MalformedBeadError("'ralph_meta' must be an object")
        try:
            attempt_count = int(data.get("attempt_count") or 0)
            backoff_seconds = int(data.get("backoff_seconds") or 0)
        except (TypeError, ValueError):
            raise MalformedBeadError(
                f"invalid ralph_meta counters: attempt_count={data.get('attempt_count')!r}, "
                f"backoff_seconds={data.get('backoff_seconds')!r}"
            ) from None
        results = data.get("verifier_results") or []
        if not isinstance(results, list):
            raise MalformedBeadError("ralph_meta.verifier_results must be a list")
        return cls(
            attempt_count=attempt_count,
            last_attempt=data.get("last_attempt"),
            backoff_seconds=backoff_seconds,
            last_failure_summary=data.get("last_failure_summary") or "",
            verifier_results=list(results),
            failure_reason=data.get("failure_reason"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class WorkItem:
    """A unit of work with an intent and a pass/fail Definition of Done."""
    id: str
    intent: str
    verifiers: list[Verifier]
    title: str = ""
    constraints: Constraints = field(default_factory=Constraints)
    status: BeadStatus = BeadStatus.PENDING
    ralph_meta: RalphMeta = field(default_factory=RalphMeta)

    @classmethod
    def from_dict(
        cls,
        data: dict,
        default_max_iterations: int = 10,
        default_verifier_timeout: int = DEFAULT_VERIFIER_TIMEOUT,
    ) -> "WorkItem":
        if not isinstance(data, dict):
            raise MalformedBeadError("bead document must be a JSON object")
        bead_id = data.get("id")
        if not bead_id:
            raise MalformedBeadError("bead has no id")
        intent = data.get("intent")
        if not intent or not str(intent).strip():
            raise MalformedBeadError(f"bead {bead_id} has no intent")
        dod = data.get("dod") or {}
        if not isinstance(dod, dict):
            raise MalformedBeadError(f"bead {bead_id}: 'dod' must be an object")
        raw_verifiers = dod.get("verifiers")
        if not raw_verifiers or not isinstance(raw_verifiers, list):
            raise MalformedBeadError(f"bead {bead_id} has no dod.verifiers")
        return cls(
            id=str(bead_id),
            title=data.get("title") or "",
            intent=str(intent),
            verifiers=[Verifier.from_dict(v, default_verifier_timeout) for v in raw_verifiers],
            constraints=Constraints.from_dict(data.get("constraints"), default_max_iterations),
            status=BeadStatus.parse(data.get("status")),
            ralph_meta=RalphMeta.from_dict(data.get("ralph_meta")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "intent": self.intent,
            "dod": {"verifiers": [v.to_dict() for v in self.verifiers]},
            "constraints": self.constraints.to_dict(),
            "status": self.status.value,
            "ralph_meta": self.ralph_meta.to_dict(),
        }

    def apply(self, fields: dict) -> None:
        """Apply a partial update (persisted shape) to this in-memory bead."""
        if "status" in fields:
            self.status = BeadStatus.parse(fields["status"])
        if "title" in fields:
            self.title = fields["title"] or ""
        if "intent" in fields:
            self.intent = fields["intent"]
        meta = fields.get("ralph_meta")
        if meta:
            merged = {**self.ralph_meta.to_dict(), **meta}
            self.ralph_meta = RalphMeta.from_dict(merged)


# ── Ephemeral evaluation results ──────────────────────────────────────

@dataclass
class VerifierResult:
    name: str
    passed: bool
    reason: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    duration_sec: float = 0.0
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self, max_chars: int | None = None) -> dict:
        out = asdict(self)
        if max_chars:
            out["stdout"] = self.stdout[-max_chars:]
            out["stderr"] = self.stderr[-max_chars:]
        return out


@dataclass
class SuiteResult:
    all_passed: bool
    results: list[VerifierResult] = field(default_factory=list)

    def failed(self) -> list[VerifierResult]:
        return [r for r in self.results if not r.passed]

    def summary(self) -> str:
        """One-line summary: which verifiers failed and why."""
        if self.all_passed:
            return f"all {len(self.results)} verifiers passed"
        failed = self.failed()
        if not failed:
            return "suite incomplete"
        return "; ".join(f"{r.name}: {r.reason}" for r in failed)

    def to_list(self, max_chars: int | None = None) -> list[dict]:
        return [r.to_dict(max_chars) for r in self.results]
