"""
auth/vault.py -- Container password generation and encryption at rest.

Security design decisions:
  Generation: secrets.token_urlsafe() draws from the OS CSPRNG. Passwords are
       always system-generated; callers never pick them.

  Encryption: AES-256-GCM from the `cryptography` package. The configured
       ENCRYPTION_KEY is stretched to 32 bytes with SHA-256. Every call draws
       a fresh 96-bit IV, so sealing the same password twice never yields the
       same envelope. GCM authenticates the ciphertext: a wrong key or a
       tampered envelope fails loudly instead of decrypting to garbage.

  Envelope: ivHex + ":" + cipherHex. The IV travels with the ciphertext, so
       decryption needs nothing but the key.

  Hashing: bcrypt. Output is a fixed 60-character digest. Not used by the
       creation/access flows.

Empty-input policy: encrypt("") and decrypt("") / decrypt(None) return None
instead of raising. Everything else that cannot be processed raises
EncryptionError / DecryptionError.

Layer rule: no imports from api/, inventory/, or provisioning/. Import from
core/ is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import os
import secrets

import bcrypt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.errors import DecryptionError, EncryptionError

_IV_BYTES = 12
_DELIMITER = ":"
DEFAULT_PASSWORD_LENGTH = 16


class CredentialVault:
    """Symmetric vault for container passwords.

    Usage:
        vault = CredentialVault(settings.encryption_key)
        pw = vault.generate_password()
        envelope = vault.encrypt(pw)        # "9f1c...:a3b4..."
        assert vault.decrypt(envelope) == pw
    """

    def __init__(self, key: str) -> None:
        if not key:
            raise ValueError("CredentialVault requires a non-empty key.")
        self._aead = AESGCM(hashlib.sha256(key.encode("utf-8")).digest())

    # ------------------------------------------------------------------
    # Generation and hashing
    # ------------------------------------------------------------------

    @staticmethod
    def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
        """Return `length` URL-safe characters from the OS CSPRNG."""
        if length < 1:
            raise ValueError("Password length must be at least 1.")
        # token_urlsafe(n) yields ~1.3 chars per byte, so n bytes always cover n chars.
        return secrets.token_urlsafe(length)[:length]

    @staticmethod
    def hash_password(value: str) -> str:
        """Return a one-way bcrypt digest (60 chars) of value."""
        return bcrypt.hashpw(value.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

    @staticmethod
    def verify_password(value: str, digest: str) -> bool:
        """Return True if value matches a digest from hash_password()."""
        try:
            return bcrypt.checkpw(value.encode("utf-8"), digest.encode("utf-8"))
        except ValueError:
            return False

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str | None) -> str | None:
        """Seal plaintext into an "ivHex:cipherHex" envelope. None on empty input."""
        if not plaintext:
            return None
        if not isinstance(plaintext, str):
            raise EncryptionError("Only text values can be encrypted.")
        iv = os.urandom(_IV_BYTES)
        try:
            sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        except (OverflowError, ValueError) as e:
            raise EncryptionError("Could not encrypt value.") from e
        return iv.hex() + _DELIMITER + sealed.hex()

    def decrypt(self, envelope: str | None) -> str | None:
        """Open an envelope produced by encrypt(). None on empty input."""
        if not envelope:
            return None
        iv_hex, sep, cipher_hex = envelope.partition(_DELIMITER)
        if not sep or not iv_hex or not cipher_hex:
            raise DecryptionError("Malformed envelope: missing IV/ciphertext delimiter.")
        try:
            iv = bytes.fromhex(iv_hex)
            sealed = bytes.fromhex(cipher_hex)
        except ValueError as e:
            raise DecryptionError("Malformed envelope: invalid hex encoding.") from e
        if len(iv) != _IV_BYTES:
            raise DecryptionError("Malformed envelope: unexpected IV length.")
        try:
            plain = self._aead.decrypt(iv, sealed, None)
        except InvalidTag as e:
            raise DecryptionError("Envelope does not match the configured key.") from e
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted value is not valid text.") from e
