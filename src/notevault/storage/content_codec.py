"""Encoding of note bodies to bytes, optionally encrypted with a password.

Without a password a body is stored as its plain UTF-8 bytes. With a
password the body is encrypted with AES-256-GCM under a key derived by
PBKDF2-HMAC-SHA256 from the password and a fresh random salt. The
encrypted blob layout is::

    version (1) | kdf iterations (4, big endian) | salt (16) | nonce (12) | ciphertext + tag (16)

The header (version and iteration count) is bound to the ciphertext as
associated data, so tampering with it fails authentication like a wrong
password does.
"""
import logging
import os
import struct
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from notevault.config import MAX_KDF_ITERATIONS, config
from notevault.exceptions import CorruptError, ErrorCode, InvalidPasswordError

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32

_HEADER = struct.Struct(">BI")
HEADER_SIZE = _HEADER.size + SALT_SIZE + NONCE_SIZE
MIN_BLOB_SIZE = HEADER_SIZE + TAG_SIZE


class ContentCodec:
    """Turns note bodies into storage bytes and back."""

    def __init__(self, iterations: Optional[int] = None):
        """Initialize the codec.

        Args:
            iterations: PBKDF2 rounds for newly encrypted blobs. If None,
                uses config.kdf_iterations. Decoding always uses the count
                recorded in the blob header.

        Raises:
            ValueError: If iterations is outside 1..MAX_KDF_ITERATIONS.
        """
        self.iterations = iterations or config.kdf_iterations
        if not 1 <= self.iterations <= MAX_KDF_ITERATIONS:
            raise ValueError(
                f"iterations must be between 1 and {MAX_KDF_ITERATIONS}"
            )

    def encode(self, body: str, password: Optional[str] = None) -> bytes:
        """Encode a body for storage.

        Args:
            body: The plaintext body.
            password: Encrypt under this password; store plain UTF-8 if None.

        Returns:
            The bytes to write to disk.
        """
        plaintext = body.encode("utf-8")
        if password is None:
            return plaintext

        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        header = _HEADER.pack(FORMAT_VERSION, self.iterations)
        key = self._derive_key(password, salt, self.iterations)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext, header)
        return header + salt + nonce + ciphertext

    def decode(self, data: bytes, password: Optional[str] = None) -> str:
        """Decode stored bytes back into a body.

        Args:
            data: Bytes produced by :meth:`encode`.
            password: The password used to encode, or None for plain bytes.

        Returns:
            The plaintext body.

        Raises:
            InvalidPasswordError: If the authentication tag does not verify.
            CorruptError: If the bytes are not valid UTF-8 or not a blob
                this codec can read.
        """
        if password is None:
            return self._decode_utf8(data)

        version, iterations, salt, nonce, ciphertext = self._split_blob(data)
        key = self._derive_key(password, salt, iterations)
        try:
            plaintext = AESGCM(key).decrypt(
                nonce, ciphertext, _HEADER.pack(version, iterations)
            )
        except InvalidTag:
            raise InvalidPasswordError()
        return self._decode_utf8(plaintext)

    @staticmethod
    def is_encrypted_blob(data: bytes) -> bool:
        """Whether the bytes look like an encrypted blob of a known version.

        Only a structural check: a plaintext body that happens to start
        with the version byte is indistinguishable until decryption.
        """
        if len(data) < MIN_BLOB_SIZE:
            return False
        return data[0] == FORMAT_VERSION

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _derive_key(password: str, salt: bytes, iterations: int) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(password.encode("utf-8"))

    @staticmethod
    def _split_blob(data: bytes):
        if len(data) < MIN_BLOB_SIZE:
            raise CorruptError(
                f"Encrypted blob too short ({len(data)} bytes)"
            )
        version, iterations = _HEADER.unpack_from(data, 0)
        if version != FORMAT_VERSION:
            raise CorruptError(
                f"Unsupported encrypted blob version {version}",
                code=ErrorCode.UNSUPPORTED_FORMAT,
            )
        # Bounded before any key derivation
        if not 1 <= iterations <= MAX_KDF_ITERATIONS:
            raise CorruptError(
                f"Encrypted blob has an invalid iteration count ({iterations})"
            )
        offset = _HEADER.size
        salt = data[offset:offset + SALT_SIZE]
        offset += SALT_SIZE
        nonce = data[offset:offset + NONCE_SIZE]
        offset += NONCE_SIZE
        return version, iterations, salt, nonce, data[offset:]

    @staticmethod
    def _decode_utf8(data: bytes) -> str:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptError("Content is not valid UTF-8", original_error=e) from e
