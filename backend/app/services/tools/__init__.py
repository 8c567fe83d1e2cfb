from __future__ import annotations

"""backend/app/services/tools/__init__.py

External program runners.

Report format generators run through an object implementing
`CommandRunnerProtocol`; `get_command_runner` picks the right one for the
current process (privilege drop when root, plain local execution
otherwise). Tests and callers may inject their own runner instead.
"""

from app.services.tools.base import (
    CommandResult,
    CommandRunnerProtocol,
    LocalCommandRunner,
    PrivilegeDroppingRunner,
    RunAs,
    get_command_runner,
    run_command,
)

__all__ = [
    "CommandResult",
    "CommandRunnerProtocol",
    "LocalCommandRunner",
    "PrivilegeDroppingRunner",
    "RunAs",
    "get_command_runner",
    "run_command",
]
