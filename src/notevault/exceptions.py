"""Custom exceptions for NoteVault.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Every repository, version store and
codec operation either returns its value or raises one of these.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Lookup errors (1xxx)
    NOT_FOUND = 1001
    FOLDER_NOT_FOUND = 1002
    NOTE_NOT_FOUND = 1003
    TAG_NOT_FOUND = 1004
    VERSION_NOT_FOUND = 1005

    # Structural errors (2xxx)
    DUPLICATE_NAME = 2001

    # Encryption errors (3xxx)
    INVALID_PASSWORD = 3001
    ENCRYPTION_REQUIRED = 3002
    NOT_ENCRYPTED = 3003

    # Storage errors (4xxx)
    CORRUPT = 4001
    IO_FAILURE = 4002
    UNSUPPORTED_FORMAT = 4003

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    PATH_TRAVERSAL_DETECTED = 7002


class NoteVaultError(Exception):
    """Base exception for all NoteVault errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NotFoundError(NoteVaultError):
    """Raised when an identity (folder, note, tag or version) is stale."""

    def __init__(
        self,
        message: str,
        identity: Optional[Any] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        details = {}
        if identity is not None:
            details["identity"] = str(identity)
        super().__init__(message, code=code, details=details)
        self.identity = identity


class DuplicateNameError(NoteVaultError):
    """Raised when a name collides with a sibling folder, note or tag."""

    def __init__(self, name: str, scope: str, message: Optional[str] = None):
        super().__init__(
            message or f"A {scope} named '{name}' already exists",
            code=ErrorCode.DUPLICATE_NAME,
            details={"name": name, "scope": scope},
        )
        self.name = name
        self.scope = scope


class InvalidPasswordError(NoteVaultError):
    """Raised when an authenticated decryption fails to verify."""

    def __init__(self, message: str = "Decryption failed - wrong password?"):
        super().__init__(message, code=ErrorCode.INVALID_PASSWORD)


class EncryptionRequiredError(NoteVaultError):
    """Raised when an encrypted note is touched without a password."""

    def __init__(self, note_id: Optional[Any] = None, message: Optional[str] = None):
        details = {}
        if note_id is not None:
            details["note_id"] = str(note_id)
        super().__init__(
            message or "A password is required for an encrypted note",
            code=ErrorCode.ENCRYPTION_REQUIRED,
            details=details,
        )
        self.note_id = note_id


class CorruptError(NoteVaultError):
    """Raised when on-disk content cannot be parsed or decoded.

    The repository load path catches this per note, substitutes an empty
    body and flags the note as damaged.
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.CORRUPT,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if path:
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=code, details=details)
        self.path = path
        self.original_error = original_error


class IoFailureError(NoteVaultError):
    """Raised when the underlying file system or database fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=ErrorCode.IO_FAILURE, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class ValidationError(NoteVaultError):
    """Raised for invalid names and arguments."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]
        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value
