"""envision engine: classification, tracking, restore and profile loading."""
from .models import (
    Category,
    ChangeKind,
    LoadStatus,
    Operation,
    OverwriteKind,
    validate_variable_name,
)
from .config import EnvisionConfig
from .errors import (
    AlreadyInitializedError,
    BaselineMissingError,
    EnvisionError,
    InvalidNameError,
    NotInitializedError,
    OperationCancelledError,
    PartialClearFailureError,
    ProfileInvalidExtensionError,
    ProfileNotFoundError,
    ProfileParseFailureError,
    ProfileScriptFailureError,
    ReadonlyVariableError,
    StorageCorruptError,
    StorageUnavailableError,
    VariableNotFoundError,
)
