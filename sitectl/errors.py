"""
Error taxonomy for sitectl.

Every fatal condition raised by the orchestrator is an OrchestratorError with a
category; the CLI reports it as a single categorized line and exits non-zero.
"""


class OrchestratorError(Exception):
    """Base class for categorized orchestrator failures."""

    category = "OrchestratorError"

    def __str__(self) -> str:
        return self.args[0] if self.args else self.category

    def summary(self) -> str:
        """Single-line message shown to the user."""
        return f"{self.category}: {self}"


class DependencyMissing(OrchestratorError):
    category = "DependencyMissing"

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(
            f"missing dependencies: {', '.join(self.missing)}; "
            "install them and try again"
        )


class BuildStageFailed(OrchestratorError):
    category = "BuildStageFailed"

    def __init__(self, stage: str, used_fallback: bool, reason: str = None):
        self.stage = stage
        self.used_fallback = used_fallback
        self.reason = reason
        message = f"stage '{stage}' failed (fallback attempted: {'yes' if used_fallback else 'no'})"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class TestsFailed(OrchestratorError):
    category = "TestsFailed"
    __test__ = False  # not a pytest test class

    def __init__(self, stage: str, exit_code: int = None):
        self.stage = stage
        self.exit_code = exit_code
        message = f"test stage '{stage}' failed"
        if exit_code is not None:
            message += f" with exit code {exit_code}"
        super().__init__(message)


class ProcessSpawnFailed(OrchestratorError):
    category = "ProcessSpawnFailed"

    def __init__(self, name: str, reason: str = None):
        self.name = name
        self.reason = reason
        message = f"process '{name}' failed to start"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class HealthCheckTimedOut(OrchestratorError):
    category = "HealthCheckTimedOut"

    def __init__(self, attempts: int, target: str = None, deadline_reached: bool = False):
        self.attempts = attempts
        self.target = target
        self.deadline_reached = deadline_reached
        message = f"not ready after {attempts} attempts"
        if target:
            message = f"{target} {message}"
        if deadline_reached:
            message += " (wait budget exhausted)"
        super().__init__(message)


class InvalidArgument(OrchestratorError):
    category = "InvalidArgument"

    def __init__(self, flag: str, reason: str = None):
        self.flag = flag
        self.reason = reason
        super().__init__(reason or f"invalid argument: {flag}")


class ComposeFailed(OrchestratorError):
    category = "ComposeFailed"
