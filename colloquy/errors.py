"""Exception hierarchy shared by the turn engine and the CLI."""


class ColloquyError(Exception):
    """Base class for reportable runtime failures."""


class ConfigError(ColloquyError):
    """Raised for invalid configuration (bad profiles, missing credentials, etc.)."""


class NetworkError(ColloquyError):
    """Raised when a provider is unreachable, times out, or replies with garbage."""


class FileAccessError(ColloquyError):
    """Raised when a transcript, context, or prompt file cannot be read or written."""


class ToolExecutionError(ColloquyError):
    """Raised inside a tool executor. Never escapes ToolRegistry.execute."""


class ToolLoopExceeded(ColloquyError):
    """Raised when the model keeps requesting tools past the round cap."""

    def __init__(self, rounds: int):
        super().__init__(
            f"model still requested tools after {rounds} round(s), turn aborted"
        )
        self.rounds = rounds
