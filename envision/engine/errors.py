"""Exception hierarchy for envision.

One exception per failure kind. Every error carries the offending
variable name or path plus the underlying reason, and the process exit
code the command line should use when it is the final outcome.
"""
from __future__ import annotations

from pathlib import Path

EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_STORAGE_CORRUPT = 3
EXIT_PARTIAL_CLEAR = 4


class EnvisionError(Exception):
    """Base exception for all envision errors."""

    exit_code: int = EXIT_FAILURE


class NotInitializedError(EnvisionError):
    """No session exists for the current scope."""
    def __init__(self, scope: str):
        self.scope = scope
        super().__init__(
            f"No active session for scope {scope}. "
            "Run 'envision session init' first."
        )


class AlreadyInitializedError(EnvisionError):
    """A session already exists and neither --force nor --resume was given."""
    def __init__(self, scope: str, path: Path):
        self.scope = scope
        self.path = path
        super().__init__(
            f"Session already exists for scope {scope} ({path}). "
            "Use --force to reinitialize or --resume to continue."
        )


class InvalidNameError(EnvisionError):
    """Variable name does not follow POSIX naming rules."""
    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid variable name '{name}': {reason}")


class VariableNotFoundError(EnvisionError):
    """Variable is not present in the live environment.

    Unsetting a missing variable reports this as a warning, never as a
    failure.
    """
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Variable '{name}' is not set")


class ReadonlyVariableError(EnvisionError):
    """The environment refused to mutate a readonly variable."""
    def __init__(self, name: str, operation: str):
        self.name = name
        self.operation = operation
        super().__init__(f"Cannot {operation} '{name}': variable is readonly")


class StorageCorruptError(EnvisionError):
    """The persisted session record could not be read or parsed."""

    exit_code = EXIT_STORAGE_CORRUPT

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Session data corrupted ({path}): {reason}")


class StorageUnavailableError(EnvisionError):
    """The session record could not be written or its directory created."""
    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Session storage unavailable ({path}): {reason}")


class BaselineMissingError(EnvisionError):
    """The session exists but carries no usable baseline."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            f"Session {session_id} has no baseline snapshot. "
            "Run 'envision session init --force' to capture a new one."
        )


class ProfileNotFoundError(EnvisionError):
    """Profile path does not exist."""
    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Profile file not found: {path}")


class ProfileInvalidExtensionError(EnvisionError):
    """Profile filename does not end with a recognized extension."""
    def __init__(self, path: Path, allowed: tuple[str, ...]):
        self.path = path
        self.allowed = allowed
        super().__init__(
            f"Invalid profile extension: '{path}'. "
            f"Must be {' or '.join(allowed)}"
        )


class ProfileParseFailureError(EnvisionError):
    """Profile content could not be turned into a set of assignments."""
    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to parse profile {path}: {reason}")


class ProfileScriptFailureError(EnvisionError):
    """The profile's own script failed.

    ``message`` and ``exit_code`` are the script's, passed through unchanged.
    """
    def __init__(self, path: Path, message: str, exit_code: int):
        self.path = path
        self.message = message
        self.exit_code = exit_code
        super().__init__(f"Profile script failed (exit {exit_code}): {message}")


class PartialClearFailureError(EnvisionError):
    """Some tracked variables could not be restored to baseline."""

    exit_code = EXIT_PARTIAL_CLEAR

    def __init__(self, unresolved: list[str], reasons: dict[str, str] | None = None):
        self.unresolved = list(unresolved)
        self.reasons = dict(reasons or {})
        details = "; ".join(
            f"{name}: {self.reasons[name]}" if name in self.reasons else name
            for name in self.unresolved
        )
        super().__init__(
            f"Failed to clear {len(self.unresolved)} variable(s): {details}"
        )


class OperationCancelledError(EnvisionError):
    """User declined a confirmation prompt, or no prompt was possible."""
    def __init__(self, operation: str, reason: str = "cancelled"):
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation.capitalize()} {reason}")
