"""
NoteVault - a local, file-backed store for notes organized into folders.

This package keeps an in-memory index of folders and notes consistent with
the files on disk, maintains the wiki-link graph between notes, records
point-in-time versions of note content, and transparently encrypts note
bodies at rest.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notevault")
except PackageNotFoundError:
    __version__ = "0.3.0"
