class SpecpilotError(Exception):
    """Base class for errors raised by specpilot."""


class ProjectNotFoundError(SpecpilotError):
    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class InvalidVFSError(SpecpilotError):
    """Stored VFS blob could not be parsed; the current operation must stop."""

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Invalid VFS data for project {project_id}")
        self.project_id = project_id


class VerificationFailedError(SpecpilotError):
    def __init__(self, attempts: int, output: str) -> None:
        super().__init__(f"Verification still failing after {attempts} attempts")
        self.attempts = attempts
        self.output = output


class VMUnavailableError(SpecpilotError):
    """No usable VM could be obtained for a deployment."""
