"""
snapkg Exception Hierarchy

Provides clear, actionable error messages with structured information
for logging, user feedback, and programmatic error handling.
"""

from typing import Optional, Dict, Any


class SnapkgError(Exception):
    """
    Base exception for all snapkg errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context as key-value pairs
        cause: Original exception that caused this error
        recoverable: Whether the error is recoverable
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        self.recoverable = recoverable

    def __str__(self):
        s = f"[{self.code}] {self.message}"
        if self.details:
            s += f" (details: {self.details})"
        if self.cause:
            s += f" caused by: {self.cause}"
        return s

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# Snapshot errors
# =============================================================================

class SnapshotError(SnapkgError):
    """Base for snapshot-related errors."""
    pass


class SnapshotNotFoundError(SnapshotError):
    """Referenced snapshot does not exist."""
    def __init__(self, snapshot: str, operation: Optional[str] = None):
        message = f"Snapshot {snapshot} doesn't exist"
        if operation:
            message = f"Cannot {operation} as snapshot {snapshot} doesn't exist"
        super().__init__(
            message,
            code="SNAPSHOT_NOT_FOUND",
            details={"snapshot": snapshot},
            recoverable=False,
        )
        self.snapshot = snapshot


class SnapshotInUseError(SnapshotError):
    """A transaction for the snapshot is already in flight."""
    def __init__(self, snapshot: str):
        super().__init__(
            f"Snapshot {snapshot} appears to be in use. If you're certain it's "
            f"not in use, clear the lock with 'snapkg unlock {snapshot}'",
            code="SNAPSHOT_IN_USE",
            details={"snapshot": snapshot},
        )
        self.snapshot = snapshot


class ProtectedSnapshotError(SnapshotError):
    """Attempted mutation of a protected snapshot."""
    def __init__(self, snapshot: str, reason: str = "should not be modified"):
        label = "Snapshot 0 (base)" if snapshot == "0" else f"Snapshot {snapshot}"
        super().__init__(
            f"{label} {reason}",
            code="SNAPSHOT_PROTECTED",
            details={"snapshot": snapshot},
            recoverable=False,
        )
        self.snapshot = snapshot


class CorruptStateError(SnapkgError):
    """A persisted tree, manifest or status file failed to parse."""
    def __init__(self, path: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Cannot read {path}: {reason}",
            code="CORRUPT_STATE",
            details={"path": str(path), "reason": reason},
            cause=cause,
            recoverable=False,
        )


# =============================================================================
# Lineage tree errors
# =============================================================================

class TreeError(SnapkgError):
    """Base for lineage tree errors."""
    pass


class DuplicateIdError(TreeError):
    """Snapshot id already present in the tree."""
    def __init__(self, snapshot: str):
        super().__init__(
            f"Snapshot {snapshot} is already in the tree",
            code="DUPLICATE_ID",
            details={"snapshot": snapshot},
        )


class UnknownParentError(TreeError):
    """Parent id is not present in the tree."""
    def __init__(self, parent: str, snapshot: str):
        super().__init__(
            f"Cannot add {snapshot}: parent {parent} is not in the tree",
            code="UNKNOWN_PARENT",
            details={"parent": parent, "snapshot": snapshot},
        )


class UnknownIdError(TreeError):
    """Snapshot id is not present in the tree."""
    def __init__(self, snapshot: str):
        super().__init__(
            f"Snapshot {snapshot} is not in the tree",
            code="UNKNOWN_ID",
            details={"snapshot": snapshot},
        )


class HasChildrenError(TreeError):
    """Node still has children and cannot be removed on its own."""
    def __init__(self, snapshot: str, children):
        super().__init__(
            f"Snapshot {snapshot} has children: {', '.join(sorted(children))}",
            code="HAS_CHILDREN",
            details={"snapshot": snapshot, "children": sorted(children)},
        )


# =============================================================================
# Package transaction errors
# =============================================================================

class TransactionError(SnapkgError):
    """Base for package transaction errors."""
    pass


class OperationFailedError(TransactionError):
    """Package-manager or helper command returned non-zero."""
    def __init__(
        self,
        operation: str,
        snapshot: str,
        package: Optional[str] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ):
        target = f" {package}" if package else ""
        super().__init__(
            f"Failed to {operation}{target} in snapshot {snapshot}",
            code="OPERATION_FAILED",
            details={
                "operation": operation,
                "snapshot": snapshot,
                "package": package,
                "returncode": returncode,
            },
        )
        self.operation = operation
        self.snapshot = snapshot
        self.package = package
        self.returncode = returncode
        self.output = output


class RemovalNotAllowedError(TransactionError):
    """Removing a system package while the lock is active."""
    def __init__(self, packages, snapshot: str):
        packages = sorted(packages)
        super().__init__(
            f"Removing system package(s) {', '.join(packages)} is not allowed",
            code="REMOVAL_NOT_ALLOWED",
            details={"packages": packages, "snapshot": snapshot},
            recoverable=False,
        )
        self.packages = packages


# =============================================================================
# Configuration errors
# =============================================================================

class ConfigError(SnapkgError):
    """Base for configuration errors."""
    pass


class InvalidConfigError(ConfigError):
    """Invalid configuration."""
    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Invalid configuration: {field}={value}: {reason}",
            code="INVALID_CONFIG",
            details={"field": field, "value": str(value), "reason": reason},
        )


# =============================================================================
# Template errors
# =============================================================================

class TemplateError(SnapkgError):
    """Template-related errors."""
    pass


class TemplateNotFoundError(TemplateError):
    """Template not found."""
    def __init__(self, template_name: str):
        super().__init__(
            f"Template not found: {template_name}",
            code="TEMPLATE_NOT_FOUND",
            details={"template": template_name},
        )


class TemplateRenderError(TemplateError):
    """Template rendering failed."""
    def __init__(self, template_name: str, reason: str):
        super().__init__(
            f"Failed to render template '{template_name}': {reason}",
            code="TEMPLATE_RENDER_FAILED",
            details={"template": template_name, "reason": reason},
        )
