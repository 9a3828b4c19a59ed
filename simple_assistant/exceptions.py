"""Custom exceptions for Simple Assistant."""


class AssistantError(Exception):
    """Base exception for Simple Assistant."""

    pass


class ConfigError(AssistantError):
    """Configuration-related errors (missing API key, bad settings)."""

    pass


class ProviderError(AssistantError):
    """LLM provider errors (unknown provider, non-success HTTP status)."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ParseError(AssistantError):
    """Provider response did not have the expected shape."""

    pass


class OperationCancelledError(AssistantError):
    """A request or command was cancelled by the user."""

    pass


class BusyError(AssistantError):
    """Another operation of the same kind is already outstanding."""

    pass


class CommandError(AssistantError):
    """Command execution errors."""

    def __init__(self, command: str, message: str):
        super().__init__(message)
        self.command = command


class CommandTimeoutError(CommandError, TimeoutError):
    """Command did not exit before its timeout."""

    def __init__(self, command: str, timeout_seconds: int):
        super().__init__(command, f"Command timed out after {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds


class SpawnError(CommandError):
    """Command process could not be started."""

    pass
