"""Tests for the content codec."""
import struct
from unittest.mock import patch

import pytest

from notevault.config import MAX_KDF_ITERATIONS
from notevault.exceptions import CorruptError, ErrorCode, InvalidPasswordError
from notevault.storage.content_codec import (
    FORMAT_VERSION,
    HEADER_SIZE,
    MIN_BLOB_SIZE,
    ContentCodec,
)


class TestPlaintext:
    def test_plain_body_is_utf8_bytes(self, codec):
        assert codec.encode("Zürich notes") == "Zürich notes".encode("utf-8")

    def test_decode_plain(self, codec):
        assert codec.decode("héllo\n[[Plan]]".encode("utf-8")) == "héllo\n[[Plan]]"

    def test_empty_body(self, codec):
        assert codec.encode("") == b""
        assert codec.decode(b"") == ""

    def test_invalid_utf8_is_corrupt(self, codec):
        with pytest.raises(CorruptError) as exc_info:
            codec.decode(b"\xff\xfe\xfa")
        assert exc_info.value.code == ErrorCode.CORRUPT


class TestEncryption:
    def test_encrypted_blob_is_not_plaintext(self, codec):
        blob = codec.encode("secret plan", "pw")
        assert b"secret plan" not in blob
        assert len(blob) == HEADER_SIZE + len("secret plan") + 16
        assert codec.is_encrypted_blob(blob)

    def test_decrypt_with_right_password(self, codec):
        blob = codec.encode("Line one\nLine two ✓", "correct horse")
        assert codec.decode(blob, "correct horse") == "Line one\nLine two ✓"

    def test_each_encryption_uses_fresh_salt_and_nonce(self, codec):
        assert codec.encode("same", "pw") != codec.encode("same", "pw")

    def test_wrong_password_fails_authentication(self, codec):
        blob = codec.encode("secret", "right")
        with pytest.raises(InvalidPasswordError) as exc_info:
            codec.decode(blob, "wrong")
        assert exc_info.value.code == ErrorCode.INVALID_PASSWORD

    def test_tampered_ciphertext_fails_authentication(self, codec):
        blob = bytearray(codec.encode("secret", "pw"))
        blob[-1] ^= 0x01
        with pytest.raises(InvalidPasswordError):
            codec.decode(bytes(blob), "pw")

    def test_tampered_header_fails_authentication(self, codec):
        blob = codec.encode("secret", "pw")
        version, iterations = struct.unpack_from(">BI", blob)
        forged = struct.pack(">BI", version, iterations + 1) + blob[5:]
        with pytest.raises(InvalidPasswordError):
            codec.decode(forged, "pw")

        salt_flipped = bytearray(blob)
        salt_flipped[6] ^= 0xFF
        with pytest.raises(InvalidPasswordError):
            codec.decode(bytes(salt_flipped), "pw")

    def test_iteration_count_travels_with_blob(self):
        blob = ContentCodec(iterations=1500).encode("body", "pw")
        assert struct.unpack_from(">BI", blob)[1] == 1500
        # A codec configured differently still reads it
        assert ContentCodec(iterations=2000).decode(blob, "pw") == "body"

    def test_short_blob_is_corrupt(self, codec):
        with pytest.raises(CorruptError):
            codec.decode(b"\x01\x00\x00", "pw")

    def test_unknown_version_is_unsupported(self, codec):
        blob = bytearray(codec.encode("secret", "pw"))
        blob[0] = FORMAT_VERSION + 1
        with pytest.raises(CorruptError) as exc_info:
            codec.decode(bytes(blob), "pw")
        assert exc_info.value.code == ErrorCode.UNSUPPORTED_FORMAT

    @pytest.mark.parametrize("iterations", [0, MAX_KDF_ITERATIONS + 1, 0xFFFFFFFF])
    def test_out_of_range_iteration_count_is_corrupt(self, codec, iterations):
        blob = codec.encode("secret", "pw")
        forged = struct.pack(">BI", FORMAT_VERSION, iterations) + blob[5:]
        with patch.object(ContentCodec, "_derive_key") as derive:
            with pytest.raises(CorruptError) as exc_info:
                codec.decode(forged, "pw")
        assert exc_info.value.code == ErrorCode.CORRUPT
        derive.assert_not_called()

    def test_codec_rejects_excessive_iterations(self):
        with pytest.raises(ValueError):
            ContentCodec(iterations=MAX_KDF_ITERATIONS + 1)

    def test_is_encrypted_blob_rejects_plain_text(self, codec):
        assert not codec.is_encrypted_blob(b"just some words")
        assert not codec.is_encrypted_blob(b"x" * MIN_BLOB_SIZE)
