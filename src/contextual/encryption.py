"""Authenticated encryption for CONTEXTUAL payloads at rest.

Every persisted context and every backup snapshot is wrapped in an
*envelope*::

    {"ciphertext": "<hex>", "iv": "<hex>", "authTag": "<hex>"}

Uses only Python standard library modules.  The cipher is HMAC-SHA256 in
CTR mode for confidentiality and HMAC-SHA256 over ``IV || ciphertext`` for
integrity (encrypt-then-MAC).  The tag is verified before any plaintext is
produced; a missing or mismatched tag is a hard failure.

Keys are 32 bytes.  A key supplied as 64 hex characters is used as-is
(:func:`generate_key` produces keys in this form); any other string is
treated as a passphrase and stretched with PBKDF2-HMAC-SHA256.
"""

from __future__ import annotations

import binascii
import contextlib
import hashlib
import hmac
import json
import os
import re
import struct
from collections.abc import Mapping
from typing import Any

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_SALT_LENGTH = 16  # 128-bit salt
_KEY_LENGTH = 32  # 256-bit key
_IV_LENGTH = 16  # 128-bit initialisation vector
_TAG_LENGTH = 32  # 256-bit HMAC-SHA256 tag
_PBKDF2_ITERATIONS = 100_000  # OWASP-recommended minimum for PBKDF2-SHA256

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")

ENVELOPE_FIELDS: tuple[str, ...] = ("ciphertext", "iv", "authTag")


class DecryptionError(ValueError):
    """Raised when an envelope is malformed or fails authentication."""


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def generate_key() -> str:
    """Return a fresh random key as 64 hex characters (32 bytes)."""
    return os.urandom(_KEY_LENGTH).hex()


def is_hex_key(key: str) -> bool:
    """Return ``True`` if *key* is a raw 32-byte key in hex form."""
    return bool(_HEX_KEY_RE.match(key))


def derive_key(password: str, salt: bytes) -> bytes:
    """Derive a 256-bit encryption key from a password and salt.

    Uses PBKDF2-HMAC-SHA256 with 100,000 iterations.

    Args:
        password: The user-provided passphrase.
        salt: A random 16-byte salt.  Must be stored alongside the
            encrypted data so the same key can be derived later.

    Returns:
        A 32-byte (256-bit) derived key.
    """
    return hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt,
        _PBKDF2_ITERATIONS,
        dklen=_KEY_LENGTH,
    )


def resolve_key(key: str, salt: bytes | None = None) -> bytes:
    """Turn a configured key string into 32 key bytes.

    Args:
        key: 64 hex characters, or a passphrase.
        salt: Salt for passphrase stretching.  Required when *key* is
            not a hex key.

    Returns:
        The 32-byte key.

    Raises:
        ValueError: If *key* is a passphrase and no salt was given.
    """
    if is_hex_key(key):
        return bytes.fromhex(key)
    if salt is None:
        raise ValueError("A salt is required to derive a key from a passphrase.")
    return derive_key(key, salt)


def load_or_create_salt(path: str) -> bytes:
    """Read the per-store salt from *path*, creating it on first use."""
    if os.path.exists(path):
        with open(path, "rb") as fh:
            salt = fh.read()
        if len(salt) == _SALT_LENGTH:
            return salt
        raise ValueError(f"Salt file {path!r} is corrupt ({len(salt)} bytes).")
    salt = os.urandom(_SALT_LENGTH)
    _write_private(path, salt)
    return salt


def load_or_create_key(path: str) -> str:
    """Read a generated hex key from *path*, creating it on first use.

    The key file is what keeps stored data readable across restarts when
    the caller does not supply a key.
    """
    if os.path.exists(path):
        with open(path, encoding="ascii") as fh:
            key = fh.read().strip()
        if is_hex_key(key):
            return key
        raise ValueError(f"Key file {path!r} does not contain a 64-character hex key.")
    key = generate_key()
    _write_private(path, key.encode("ascii"))
    return key


def _write_private(path: str, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
    with contextlib.suppress(OSError):
        os.chmod(path, 0o600)


def _subkeys(key: bytes) -> tuple[bytes, bytes]:
    """Split *key* into independent encryption and MAC keys."""
    if len(key) != _KEY_LENGTH:
        raise ValueError(f"Encryption key must be {_KEY_LENGTH} bytes (got {len(key)}).")
    enc_key = hmac.new(key, b"contextual-enc", hashlib.sha256).digest()
    mac_key = hmac.new(key, b"contextual-mac", hashlib.sha256).digest()
    return enc_key, mac_key


# ---------------------------------------------------------------------------
# Authenticated encryption (HMAC-SHA256 CTR mode)
# ---------------------------------------------------------------------------


def _keystream_block(key: bytes, iv: bytes, counter: int) -> bytes:
    """Generate a 32-byte keystream block using HMAC-SHA256 in CTR mode."""
    # CTR input = IV || counter (big-endian 4 bytes)
    ctr_input = iv + struct.pack(">I", counter)
    return hmac.new(key, ctr_input, hashlib.sha256).digest()


def _apply_keystream(data: bytes, key: bytes, iv: bytes) -> bytes:
    """XOR *data* with the keystream for (*key*, *iv*)."""
    out = bytearray()
    for counter, offset in enumerate(range(0, len(data), hashlib.sha256().digest_size)):
        block = _keystream_block(key, iv, counter)
        chunk = data[offset : offset + len(block)]
        out.extend(a ^ b for a, b in zip(chunk, block))
    return bytes(out)


def encrypt_payload(plaintext: str, key: bytes) -> dict[str, str]:
    """Encrypt *plaintext* and return its envelope.

    The scheme:
        1. Generate a random 16-byte IV.
        2. XOR the UTF-8 plaintext with the HMAC-SHA256 CTR keystream.
        3. Compute an HMAC-SHA256 tag over ``IV || ciphertext``.

    Args:
        plaintext: The string to encrypt.
        key: The 32-byte key.

    Returns:
        A dict with hex-encoded ``ciphertext``, ``iv`` and ``authTag``.
    """
    enc_key, mac_key = _subkeys(key)
    iv = os.urandom(_IV_LENGTH)
    ciphertext = _apply_keystream(plaintext.encode("utf-8"), enc_key, iv)
    tag = hmac.new(mac_key, iv + ciphertext, hashlib.sha256).digest()
    return {"ciphertext": ciphertext.hex(), "iv": iv.hex(), "authTag": tag.hex()}


def decrypt_payload(envelope: Mapping[str, Any], key: bytes) -> str:
    """Verify and decrypt an envelope produced by :func:`encrypt_payload`.

    Args:
        envelope: Mapping with ``ciphertext``, ``iv`` and ``authTag``.
        key: The same 32-byte key used for encryption.

    Returns:
        The decrypted plaintext string.

    Raises:
        DecryptionError: If a field is missing or badly encoded, or the
            authentication tag does not match (tampering or wrong key).
    """
    missing = [name for name in ENVELOPE_FIELDS if not isinstance(envelope.get(name), str)]
    if missing:
        raise DecryptionError(f"Envelope is missing field(s): {', '.join(missing)}.")

    try:
        ciphertext = bytes.fromhex(envelope["ciphertext"])
        iv = bytes.fromhex(envelope["iv"])
        tag = bytes.fromhex(envelope["authTag"])
    except (TypeError, ValueError, binascii.Error) as exc:
        raise DecryptionError(f"Envelope is not valid hex: {exc}") from exc

    if len(iv) != _IV_LENGTH or len(tag) != _TAG_LENGTH:
        raise DecryptionError("Envelope IV or authentication tag has the wrong length.")

    enc_key, mac_key = _subkeys(key)
    # Verify authentication tag BEFORE decrypting (encrypt-then-MAC).
    expected = hmac.new(mac_key, iv + ciphertext, hashlib.sha256).digest()
    if not hmac.compare_digest(tag, expected):
        raise DecryptionError(
            "Authentication failed: payload has been tampered with or key is wrong."
        )

    try:
        return _apply_keystream(ciphertext, enc_key, iv).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("Decrypted payload is not valid UTF-8.") from exc


def seal(plaintext: str, key: bytes) -> str:
    """Encrypt *plaintext* and return the envelope as a JSON string."""
    return json.dumps(encrypt_payload(plaintext, key))


def unseal(raw: str, key: bytes) -> str:
    """Parse a JSON envelope string and decrypt it.

    Raises:
        DecryptionError: If *raw* is not a JSON envelope or fails
            verification.  Plaintext is never passed through.
    """
    try:
        envelope = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise DecryptionError("Payload is not a JSON envelope.") from exc
    if not isinstance(envelope, dict):
        raise DecryptionError("Payload is not a JSON envelope.")
    return decrypt_payload(envelope, key)
