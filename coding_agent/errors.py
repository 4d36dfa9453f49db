from typing import Any


class AgentError(Exception):
    """Base class for every error raised by the coding agent."""


class SandboxError(AgentError):
    pass


class SandboxProvisionError(SandboxError):
    """The remote workspace could not be created."""


class SandboxCommandError(SandboxError):
    """A command run inside the sandbox exited non-zero."""

    def __init__(self, command: str, exit_code: int | None, stderr: str = "") -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip() or f"exit code {exit_code}"
        super().__init__(f"{command} failed: {detail}")


class EditConflictError(SandboxError):
    """old_str did not match exactly once in the target file."""

    def __init__(self, path: str, matches: int) -> None:
        self.path = path
        self.matches = matches
        if matches == 0:
            msg = f"old_str not found in {path}"
        else:
            msg = (
                f"old_str matches {matches} times in {path}; "
                "it must match exactly once, include more surrounding context"
            )
        super().__init__(msg)


class ExternalCommandError(AgentError):
    """A local child process failed to launch or exited non-zero."""

    def __init__(self, command: str, exit_code: int | None, output: str = "") -> None:
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            f"`{command}` exited with code {exit_code}: {output.strip()}"
            if exit_code is not None
            else f"`{command}` could not be started: {output.strip()}"
        )


class ToolRegistryError(AgentError):
    pass


class ToolDiscoveryError(ToolRegistryError):
    """The remote tool source could not be reached or listed."""


class ToolCollisionError(ToolRegistryError):
    def __init__(self, names: list[str]) -> None:
        self.names = sorted(names)
        super().__init__(
            "Remote tools collide with local tools: " + ", ".join(self.names)
        )


class CompletionError(AgentError):
    """The completion engine call failed."""

    def __init__(self, message: str, *, cause: Any = None) -> None:
        self.cause = cause
        super().__init__(message)
