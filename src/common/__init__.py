"""
snapkg Common Utilities

Exceptions, logging setup and decorators shared by the snapkg packages.
"""

from .exceptions import (
    SnapkgError, SnapshotError, SnapshotNotFoundError, SnapshotInUseError,
    ProtectedSnapshotError, CorruptStateError, TreeError, DuplicateIdError,
    UnknownParentError, UnknownIdError, HasChildrenError, TransactionError,
    OperationFailedError, RemovalNotAllowedError, ConfigError,
    InvalidConfigError, TemplateError, TemplateNotFoundError,
    TemplateRenderError,
)
from .decorators import handle_errors, require_root, timed
from .logging_config import setup_logging, LogContext

__all__ = [
    # Exceptions
    "SnapkgError", "SnapshotError", "SnapshotNotFoundError", "SnapshotInUseError",
    "ProtectedSnapshotError", "CorruptStateError", "TreeError", "DuplicateIdError",
    "UnknownParentError", "UnknownIdError", "HasChildrenError", "TransactionError",
    "OperationFailedError", "RemovalNotAllowedError", "ConfigError",
    "InvalidConfigError", "TemplateError", "TemplateNotFoundError",
    "TemplateRenderError",
    # Decorators
    "handle_errors", "require_root", "timed",
    # Logging
    "setup_logging", "LogContext",
]
