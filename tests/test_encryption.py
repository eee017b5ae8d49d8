from __future__ import annotations

import base64

import pytest

from faceauth.exceptions import DecryptionError
from faceauth.services.encryption_service import EncryptionService, get_encryption_service


PLAINTEXT = b'[[0.1, 0.2, 0.3], [0.4, 0.5, 0.6]]'


def test_round_trip(encryption: EncryptionService):
    blob = encryption.encrypt(PLAINTEXT, "alice")
    assert encryption.decrypt(blob, "alice") == PLAINTEXT


@pytest.mark.parametrize("plaintext", [b"", b"x", b"0123456789abcdef", b"\x00" * 33])
def test_round_trip_block_edges(encryption: EncryptionService, plaintext: bytes):
    assert encryption.decrypt(encryption.encrypt(plaintext, "bob"), "bob") == plaintext


def test_wire_format(encryption: EncryptionService):
    raw = base64.b64decode(encryption.encrypt(PLAINTEXT, "alice"))
    ciphertext = raw[32:]
    assert len(ciphertext) > 0
    assert len(ciphertext) % 16 == 0
    # Always at least one padding byte
    assert len(ciphertext) == (len(PLAINTEXT) // 16 + 1) * 16


def test_encryption_is_not_deterministic(encryption: EncryptionService):
    a = encryption.encrypt(PLAINTEXT, "alice")
    b = encryption.encrypt(PLAINTEXT, "alice")
    assert a != b
    raw_a, raw_b = base64.b64decode(a), base64.b64decode(b)
    assert raw_a[:16] != raw_b[:16]      # salt
    assert raw_a[16:32] != raw_b[16:32]  # IV
    assert encryption.decrypt(a, "alice") == encryption.decrypt(b, "alice") == PLAINTEXT


def test_wrong_key_context_does_not_recover_plaintext(encryption: EncryptionService):
    blob = encryption.encrypt(PLAINTEXT, "alice")
    try:
        result = encryption.decrypt(blob, "mallory")
    except DecryptionError:
        return
    assert result != PLAINTEXT


@pytest.mark.parametrize(
    "blob",
    [
        "%%% not base64 %%%",
        base64.b64encode(b"\x01" * 20).decode(),        # shorter than salt + IV
        base64.b64encode(b"\x01" * 32).decode(),        # header only, no ciphertext
        base64.b64encode(b"\x01" * (32 + 15)).decode(),  # not a multiple of the block size
    ],
)
def test_malformed_blobs_raise(encryption: EncryptionService, blob: str):
    with pytest.raises(DecryptionError):
        encryption.decrypt(blob, "alice")


def test_truncated_ciphertext_raises(encryption: EncryptionService):
    raw = base64.b64decode(encryption.encrypt(PLAINTEXT * 3, "alice"))
    truncated = base64.b64encode(raw[:-5]).decode()
    with pytest.raises(DecryptionError):
        encryption.decrypt(truncated, "alice")


def test_unpad_tolerates_out_of_range_padding():
    assert EncryptionService.pkcs7_unpad(b"abc\x00") == b"abc\x00"
    assert EncryptionService.pkcs7_unpad(b"abc\x11") == b"abc\x11"
    assert EncryptionService.pkcs7_unpad(b"abc\x01") == b"abc"
    assert EncryptionService.pkcs7_unpad(b"") == b""


def test_derived_key_depends_on_salt_and_context(encryption: EncryptionService):
    salt = b"\x00" * 16
    key = encryption.derive_key("alice", salt)
    assert len(key) == 32
    assert key == encryption.derive_key("alice", salt)
    assert key != encryption.derive_key("alice", b"\x01" * 16)
    assert key != encryption.derive_key("bob", salt)


def test_low_iteration_count_is_rejected():
    with pytest.raises(ValueError):
        EncryptionService(iterations=1000)


def test_sha256_hash_and_verify(encryption: EncryptionService):
    digest = encryption.hash_data("abc")
    assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    assert encryption.verify_hash("abc", digest)
    assert not encryption.verify_hash("abd", digest)


def test_password_hash_is_salted(encryption: EncryptionService):
    h1 = encryption.get_password_hash("s3cret")
    h2 = encryption.get_password_hash("s3cret")
    assert h1 != h2
    assert encryption.verify_password("s3cret", h1)
    assert not encryption.verify_password("wrong", h1)
    assert not encryption.verify_password("s3cret", "not-a-hash")


def test_global_service_is_lazy_singleton():
    assert get_encryption_service() is get_encryption_service()
