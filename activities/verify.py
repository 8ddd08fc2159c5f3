"""
Activity: Verify — runs a bead's Definition of Done checks.

Each verifier is an opaque shell command with an expected exit code and
optional output substrings. The suite stops at the first failing verifier
unless that verifier opts into `on_failure: continue`.
"""

from __future__ import annotations

import logging
from pathlib import Path

from features.beads.models import OnFailure, SuiteResult, Verifier, VerifierResult
from utils.process import run_process

log = logging.getLogger(__name__)


def run_verifier(verifier: Verifier, cwd: Path | str) -> VerifierResult:
    """
    Run one verifier command and judge it against its expectations.

    Never raises: spawn and monitoring errors become a failing result with
    reason "exception: <message>".
    """
    try:
        proc = run_process(verifier.command, cwd=cwd, timeout=verifier.timeout_seconds, shell=True)
    except Exception as e:
        log.error("[VERIFY] %s: could not run command: %s", verifier.name, e)
        return VerifierResult(name=verifier.name, passed=False, reason=f"exception: {e}")

    def _fail(reason: str) -> VerifierResult:
        return VerifierResult(
            name=verifier.name,
            passed=False,
            reason=reason,
            stdout=proc.stdout,
            stderr=proc.stderr,
            exit_code=proc.exit_code,
            duration_sec=proc.duration_sec,
        )

    if proc.timed_out:
        return _fail(f"timed out after {verifier.timeout_seconds}s")

    expected = verifier.expect.exit_code
    if proc.exit_code != expected:
        return _fail(f"exit code {proc.exit_code}, expected {expected}")

    if verifier.expect.stdout_contains is not None and verifier.expect.stdout_contains not in proc.stdout:
        return _fail(f"stdout_contains: {verifier.expect.stdout_contains!r} not found in stdout")

    if verifier.expect.stderr_contains is not None and verifier.expect.stderr_contains not in proc.stderr:
        return _fail(f"stderr_contains: {verifier.expect.stderr_contains!r} not found in stderr")

    return VerifierResult(
        name=verifier.name,
        passed=True,
        stdout=proc.stdout,
        stderr=proc.stderr,
        exit_code=proc.exit_code,
        duration_sec=proc.duration_sec,
    )


def evaluate_suite(verifiers: list[Verifier], cwd: Path | str) -> SuiteResult:
    """
    Run verifiers in order and aggregate the results.

    Verifiers after a failing `on_failure: stop` verifier are not run and do
    not appear in the result list; `all_passed` requires every verifier to
    have run and passed.
    """
    results: list[VerifierResult] = []
    stopped_early = False

    for index, verifier in enumerate(verifiers):
        result = run_verifier(verifier, cwd)
        results.append(result)
        if result.passed:
            log.info("[VERIFY] PASS %s (%.2fs)", verifier.name, result.duration_sec)
            continue

        log.warning("[VERIFY] FAIL %s: %s", verifier.name, result.reason)
        if verifier.on_failure != OnFailure.CONTINUE:
            remaining = len(verifiers) - index - 1
            if remaining:
                log.info("[VERIFY] Stopping suite, %d verifier(s) not run", remaining)
                stopped_early = True
            break

    all_passed = not stopped_early and len(results) == len(verifiers) and all(r.passed for r in results)
    passed = sum(1 for r in results if r.passed)
    log.info("[VERIFY] Suite: %d/%d passed%s", passed, len(verifiers), "" if all_passed else " (not done)")
    return SuiteResult(all_passed=all_passed, results=results)
