"""Tests for the structured exception hierarchy."""
from notevault.exceptions import (
    CorruptError,
    DuplicateNameError,
    EncryptionRequiredError,
    ErrorCode,
    InvalidPasswordError,
    IoFailureError,
    NotFoundError,
    NoteVaultError,
    ValidationError,
)
from notevault.models.schema import NoteId


def test_base_error_str_and_dict():
    error = NoteVaultError("bad input", details={"field": "title"})
    assert str(error) == "[VALIDATION_FAILED] bad input (field=title)"
    assert error.to_dict() == {
        "error": "NoteVaultError",
        "code": ErrorCode.VALIDATION_FAILED.value,
        "code_name": "VALIDATION_FAILED",
        "message": "bad input",
        "details": {"field": "title"},
    }


def test_str_without_details():
    assert str(InvalidPasswordError()) == (
        "[INVALID_PASSWORD] Decryption failed - wrong password?"
    )


def test_not_found_carries_identity():
    error = NotFoundError(
        "Note 0:3 not found", identity=NoteId(0, 3), code=ErrorCode.NOTE_NOT_FOUND
    )
    assert error.identity == NoteId(0, 3)
    assert error.details == {"identity": "0:3"}
    assert error.code == ErrorCode.NOTE_NOT_FOUND


def test_duplicate_name_default_message():
    error = DuplicateNameError("Work", "folder")
    assert error.message == "A folder named 'Work' already exists"
    assert error.code == ErrorCode.DUPLICATE_NAME


def test_encryption_required_names_note():
    error = EncryptionRequiredError(NoteId(1, 2))
    assert error.details == {"note_id": "1:2"}
    assert error.code == ErrorCode.ENCRYPTION_REQUIRED


def test_io_failure_hides_full_path():
    cause = OSError("No space left on device")
    error = IoFailureError(
        "Failed to write", operation="save", path="/home/user/vault/Work/Plan.md",
        original_error=cause,
    )
    assert error.details["path_hint"] == "Plan.md"
    assert "/home/user" not in str(error)
    assert error.original_error is cause


def test_corrupt_and_validation_codes():
    assert CorruptError("bad blob").code == ErrorCode.CORRUPT
    error = ValidationError("too long", field="title", value="x" * 500)
    assert len(error.details["value"]) == 100
    assert isinstance(error, NoteVaultError)
