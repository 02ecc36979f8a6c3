"""Utility functions for NoteVault."""

# Names reserved for repository bookkeeping files
RESERVED_NAMES = {".", "..", ".vault.yaml", ".folder.yaml"}


def sanitize_filename(text: str) -> str:
    """Sanitize a note title for use as a file stem.

    Keeps letters, digits, spaces, hyphens and underscores; every other
    character becomes an underscore. Leading/trailing whitespace and dots
    are stripped so the result never names a hidden or parent directory.

    Examples:
        "Plan: Q3 / Budget" -> "Plan_ Q3 _ Budget"
        "notes.txt" -> "notes_txt"

    Args:
        text: The text to sanitize.

    Returns:
        A string safe to use as a single path component ("Untitled" if
        nothing usable remains).
    """
    if not text:
        return "Untitled"

    sanitized = "".join(
        c if c.isalnum() or c in " -_" else "_" for c in text
    ).strip()
    sanitized = sanitized.strip(".")
    return sanitized or "Untitled"


def unique_stem(stem: str, taken: set) -> str:
    """Return ``stem`` or ``stem (n)`` so that it does not collide with ``taken``.

    Two different titles can sanitize to the same stem (``"a/b"`` and
    ``"a_b"``); the suffix keeps their files apart.
    """
    if stem not in taken:
        return stem
    n = 2
    while f"{stem} ({n})" in taken:
        n += 1
    return f"{stem} ({n})"


def validate_folder_name(value: str) -> str:
    """Validate that a folder name is safe to use as a directory name.

    Args:
        value: The folder name

    Returns:
        The validated value (unchanged)

    Raises:
        ValueError: If the name is empty, reserved, hidden or contains
            path separators
    """
    if not value or not value.strip():
        raise ValueError("Folder name cannot be empty")
    if "/" in value or "\\" in value:
        raise ValueError("Folder name cannot contain path separators")
    if value in RESERVED_NAMES or value.startswith("."):
        raise ValueError(f"Folder name '{value}' is reserved")
    if "\x00" in value:
        raise ValueError("Folder name cannot contain NUL characters")
    return value
