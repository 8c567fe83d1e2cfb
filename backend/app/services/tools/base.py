from __future__ import annotations

"""backend/app/services/tools/base.py

Shared utilities for running external programs.

This module provides:

- CommandResult: structured result for a single program invocation
- run_command: low-level helper that executes a command, optionally
  writing stdout to a file and running as another account
- CommandRunnerProtocol: "run this as a restricted principal" capability
- LocalCommandRunner: runs as the current process user
- PrivilegeDroppingRunner: used when we are root; hands the input and
  output paths to an unprivileged account and runs the command as it
- get_command_runner: picks the runner matching the process privileges

The signature verifier (gpgv) and report format generator scripts are
both run through these helpers.
"""

import logging
import os
import pwd
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Protocol

from app.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of a single program invocation."""

    success: bool
    return_code: int | None = None
    command: list[str] | None = None
    output: str = ""
    error: str | None = None
    stdout_path: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float | None = None
    failure_reason: str | None = None

    @property
    def spawned(self) -> bool:
        return self.failure_reason != "process-spawn-error"


@dataclass(frozen=True)
class RunAs:
    """Account a child process switches to before exec."""

    user: str
    uid: int
    gid: int

    @classmethod
    def lookup(cls, user: str) -> "RunAs":
        entry = pwd.getpwnam(user)
        return cls(user=user, uid=entry.pw_uid, gid=entry.pw_gid)


def run_command(
    cmd: List[str],
    *,
    timeout: int | None = None,
    env: dict[str, str] | None = None,
    workdir: str | Path | None = None,
    stdout_path: str | Path | None = None,
    discard_stderr: bool = False,
    run_as: RunAs | None = None,
) -> CommandResult:
    """Run a command and report how it went.

    stdout goes to `stdout_path` when given, otherwise it is captured.
    A non-zero exit is reported through `success`/`return_code`; only a
    failure to start the program sets failure_reason "process-spawn-error".
    """
    environment = os.environ.copy()
    environment.update(env or {})

    extra: dict = {}
    if run_as is not None:
        extra = {"user": run_as.uid, "group": run_as.gid, "extra_groups": []}

    stderr_target = subprocess.DEVNULL if discard_stderr else subprocess.PIPE
    started_at = datetime.utcnow()
    try:
        if stdout_path is not None:
            with open(stdout_path, "wb") as stdout:
                proc = subprocess.run(
                    cmd,
                    stdout=stdout,
                    stderr=stderr_target,
                    timeout=timeout,
                    check=False,
                    cwd=str(workdir) if workdir is not None else None,
                    env=environment,
                    **extra,
                )
        else:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=stderr_target,
                timeout=timeout,
                check=False,
                cwd=str(workdir) if workdir is not None else None,
                env=environment,
                **extra,
            )
        finished_at = datetime.utcnow()
        return CommandResult(
            success=proc.returncode == 0,
            return_code=proc.returncode,
            command=cmd,
            output=(proc.stdout or b"").decode("utf-8", errors="ignore"),
            error=(proc.stderr or b"").decode("utf-8", errors="ignore") or None,
            stdout_path=str(stdout_path) if stdout_path is not None else None,
            started_at=started_at,
            finished_at=finished_at,
            duration_seconds=(finished_at - started_at).total_seconds(),
            # Detailed failure_reason will be set by error_classifier.
            failure_reason=None,
        )
    except subprocess.TimeoutExpired:
        finished_at = datetime.utcnow()
        return CommandResult(
            success=False,
            command=cmd,
            error="timeout",
            stdout_path=str(stdout_path) if stdout_path is not None else None,
            started_at=started_at,
            finished_at=finished_at,
            duration_seconds=(finished_at - started_at).total_seconds(),
            failure_reason="timeout",
        )
    except (OSError, subprocess.SubprocessError) as exc:
        finished_at = datetime.utcnow()
        return CommandResult(
            success=False,
            command=cmd,
            error=str(exc),
            stdout_path=str(stdout_path) if stdout_path is not None else None,
            started_at=started_at,
            finished_at=finished_at,
            duration_seconds=(finished_at - started_at).total_seconds(),
            failure_reason="process-spawn-error",
        )


class CommandRunnerProtocol(Protocol):
    """Runs a program on behalf of a report format."""

    name: str

    def run(
        self,
        cmd: List[str],
        *,
        workdir: str | Path,
        stdout_path: str | Path,
        handover_paths: Iterable[str | Path] = (),
    ) -> CommandResult:
        """Run `cmd` in `workdir`, stdout into `stdout_path`, stderr dropped.

        `handover_paths` are the files and directories the program must be
        able to read or write; runners that switch accounts make sure the
        target account owns them first.
        """
        ...


class LocalCommandRunner:
    name = "local"

    def run(
        self,
        cmd: List[str],
        *,
        workdir: str | Path,
        stdout_path: str | Path,
        handover_paths: Iterable[str | Path] = (),
    ) -> CommandResult:
        return run_command(
            cmd, workdir=workdir, stdout_path=stdout_path, discard_stderr=True
        )


class PrivilegeDroppingRunner:
    """Runs programs as an unprivileged account; requires root."""

    name = "privilege-drop"

    def __init__(self, user: str) -> None:
        self.user = user

    def run(
        self,
        cmd: List[str],
        *,
        workdir: str | Path,
        stdout_path: str | Path,
        handover_paths: Iterable[str | Path] = (),
    ) -> CommandResult:
        try:
            account = RunAs.lookup(self.user)
        except KeyError:
            logger.warning("Unprivileged account %s does not exist", self.user)
            return CommandResult(
                success=False,
                command=cmd,
                error=f"unknown user {self.user}",
                failure_reason="process-spawn-error",
            )

        # The output file is created by us, so it is handed over as well.
        Path(stdout_path).touch()
        for path in [*handover_paths, stdout_path]:
            try:
                os.chown(path, account.uid, account.gid)
            except OSError as exc:
                logger.warning("Failed to chown %s to %s: %s", path, self.user, exc)
                return CommandResult(
                    success=False,
                    command=cmd,
                    error=str(exc),
                    failure_reason="process-spawn-error",
                )

        return run_command(
            cmd,
            workdir=workdir,
            stdout_path=stdout_path,
            discard_stderr=True,
            run_as=account,
        )


def get_command_runner() -> CommandRunnerProtocol:
    """Drop to the configured unprivileged account when running as root."""
    if os.geteuid() == 0:
        return PrivilegeDroppingRunner(get_settings().unprivileged_user)
    return LocalCommandRunner()
