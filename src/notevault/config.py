"""Configuration module for NoteVault."""

import logging
import os
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notevault import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls, lives alongside the default vault
_USER_ENV = Path.home() / ".notevault" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Below this the key derivation is too cheap to be worth calling "slow"
_MIN_KDF_ITERATIONS = 1000

# Upper bound on PBKDF2 rounds, both configured and read back from a blob header
MAX_KDF_ITERATIONS = 5_000_000

# Warn when the KDF is configured far below the recommended cost
_RECOMMENDED_KDF_ITERATIONS = 100_000


class VaultConfig(BaseModel):
    """Configuration for a note vault."""

    # Base directory that relative paths are resolved against
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEVAULT_BASE_DIR", "."))
    )
    # Repository root: one subdirectory per folder
    root_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEVAULT_ROOT_DIR", "notes_data"))
    )
    # Version history database, stored inside the repository root
    versions_db_name: str = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_VERSIONS_DB", ".versions.db")
    )
    # What delete does with a note's history: drop it or keep it archived
    version_retention: Literal["discard", "archive"] = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_VERSION_RETENTION", "discard")
    )
    # PBKDF2-HMAC-SHA256 rounds used to derive note encryption keys
    kdf_iterations: int = Field(
        default_factory=lambda: int(os.getenv("NOTEVAULT_KDF_ITERATIONS", "480000"))
    )
    # Body shown in memory for encrypted notes
    encrypted_placeholder: str = Field(
        default=os.getenv("NOTEVAULT_ENCRYPTED_PLACEHOLDER", "[ENCRYPTED]")
    )
    # Suffix appended to the root directory name for exported snapshots
    export_suffix: str = Field(
        default=os.getenv("NOTEVAULT_EXPORT_SUFFIX", "_export")
    )
    log_level: str = Field(default=os.getenv("NOTEVAULT_LOG_LEVEL", "INFO"))
    # Directory for rotating log files; None means ~/.notevault/logs
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTEVAULT_LOG_DIR"))
            if os.getenv("NOTEVAULT_LOG_DIR")
            else None
        )
    )
    app_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_kdf_config(self) -> "VaultConfig":
        """Validate encryption settings and warn about weak key derivation."""
        if self.kdf_iterations < _MIN_KDF_ITERATIONS:
            raise ValueError(f"kdf_iterations must be >= {_MIN_KDF_ITERATIONS}")
        if self.kdf_iterations > MAX_KDF_ITERATIONS:
            raise ValueError(f"kdf_iterations must be <= {MAX_KDF_ITERATIONS}")
        if self.kdf_iterations < _RECOMMENDED_KDF_ITERATIONS:
            logger.warning(
                "kdf_iterations=%d is below the recommended %d; encrypted notes "
                "will be cheaper to brute-force.",
                self.kdf_iterations,
                _RECOMMENDED_KDF_ITERATIONS,
            )
        if not self.encrypted_placeholder:
            raise ValueError("encrypted_placeholder cannot be empty")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_root_dir(self) -> Path:
        """Get the absolute repository root, creating it if needed."""
        root = self.get_absolute_path(self.root_dir)
        root.mkdir(parents=True, exist_ok=True)
        return root

    def get_versions_db_url(self, root_dir: Optional[Path] = None) -> str:
        """Get the SQLite URL of the version store for a repository root."""
        root = root_dir if root_dir is not None else self.get_root_dir()
        return f"sqlite:///{root / self.versions_db_name}"


# Create a global config instance
config = VaultConfig()
