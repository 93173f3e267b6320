"""
Exceptions raised while taking a snapshot.

Every error carries the stage it failed in so the final build outcome can say
whether configuration, provisioning, import or teardown went wrong.
"""

from typing import Optional


class SnapshotError(Exception):
    """Base class for all snapshot failures."""

    stage = "snapshot"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"[{self.stage}] {self.message}"


class ConfigurationError(SnapshotError):
    """Invalid or missing settings, detected before any VM exists."""

    stage = "configuration"


class ScheduledTaskError(SnapshotError):
    """A scheduled task could not be run or finished unsuccessfully."""

    stage = "scheduled-task"

    def __init__(self, task_name: str, message: str, exit_code: Optional[int] = None,
                 output: str = "") -> None:
        super().__init__(message)
        self.task_name = task_name
        self.exit_code = exit_code
        self.output = output

    def __str__(self) -> str:
        details = f"Task '{self.task_name}' {self.message}"
        if self.exit_code is not None:
            details += f" (exit code {self.exit_code})"
        if self.output:
            details += f"\n{self.output.rstrip()}"
        return details


class ProvisioningError(SnapshotError):
    """`vagrant up` failed. A teardown attempt always follows."""

    stage = "provisioning"

    def __init__(self, message: str, teardown_error: Optional[SnapshotError] = None) -> None:
        super().__init__(message)
        self.teardown_error = teardown_error


class ImageImportError(SnapshotError):
    """The captured image could not be imported."""

    stage = "import"


class TeardownError(SnapshotError):
    """`vagrant destroy` failed and there was no earlier error to preserve."""

    stage = "teardown"

    def __init__(self, message: str, masked: Optional[SnapshotError] = None) -> None:
        super().__init__(message)
        self.masked = masked

    def __str__(self) -> str:
        text = super().__str__()
        if self.masked is not None:
            text += f"; previously: {self.masked}"
        return text
