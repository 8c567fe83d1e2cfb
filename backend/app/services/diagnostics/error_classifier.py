from __future__ import annotations

"""backend/app/services/diagnostics/error_classifier.py

Centralized error classification for external program runs.

This module looks at a CommandResult (stderr, return code, etc.) and
assigns a stable, machine-readable `failure_reason` string used in log
lines.

The classification is:
- deterministic (no randomness)
- text-based (pattern matching against known error signatures)
- program-aware (gpgv, report format generators)

Typical failure_reason values:
- timeout
- process-spawn-error
- signature-bad
- signature-no-public-key
- keyring-missing
- tool-not-found
- generator-not-executable
- tool-non-zero-exit
- unknown-error
"""

from typing import Optional

from app.services.tools.base import CommandResult


def _text(value: Optional[str]) -> str:
    return (value or "").strip()


def _lower(value: Optional[str]) -> str:
    return _text(value).lower()


def _contains_any(haystack: str, needles: list[str]) -> bool:
    return any(n in haystack for n in needles)


def classify_command_failure(tool: str, result: CommandResult) -> str:
    """Classify a failed program run into a stable failure_reason code.

    It never returns None; at minimum it returns "unknown-error".
    """
    stderr = _lower(result.error)
    stdout = _lower(result.output)
    combined = f"{stdout}\n{stderr}"
    rc = result.return_code
    existing_reason = _text(result.failure_reason)

    # 1) Respect explicit timeout/spawn markers from the runner layer
    if existing_reason in ("timeout", "process-spawn-error"):
        if existing_reason == "process-spawn-error" and _contains_any(
            stderr, ["permission denied", "errno 13"]
        ):
            return "generator-not-executable" if tool == "generate" else existing_reason
        return existing_reason

    # 2) gpgv specifics
    if tool == "gpgv":
        if _contains_any(combined, ["keyblock resource", "keyring"]) and _contains_any(
            combined, ["no such file", "not found"]
        ):
            return "keyring-missing"
        if _contains_any(combined, ["no public key", "public key not found"]):
            return "signature-no-public-key"
        if rc == 1 or "bad signature" in combined:
            return "signature-bad"

    # 3) Missing binaries
    if _contains_any(combined, ["command not found", "no such file or directory"]):
        return "tool-not-found"

    # 4) Non-zero exit without a more specific classification
    if rc is not None and rc != 0:
        return "tool-non-zero-exit"

    if existing_reason:
        return existing_reason
    return "unknown-error"
