"""
Secure store - encrypts and integrity-protects checkpoint blobs.

Blobs are bound to the local account and host:
- Encryption: Fernet with a key derived from the backend secret and the
  identity (user@host). Another identity cannot decrypt.
- Integrity: HMAC-SHA256 over the ciphertext with a key derived from the
  backend secret only. Verified in constant time before any decryption.

Container format: ``<marker>:<base64(tag || ciphertext)>``
"""

import base64
import binascii
import getpass
import hashlib
import hmac
import logging
import os
import platform
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import FORMAT_MARKER, INSTALLATION_KEY_FILE, SUPPORTED_MARKERS, TAG_SIZE
from .errors import DecryptionError, IntegrityError, UnsupportedFormatError

logger = logging.getLogger(__name__)

APP_SALT = b"resumeflow/secure-store/v1"
_INFO_ENCRYPTION = b"resumeflow/encryption/"
_INFO_INTEGRITY = b"resumeflow/integrity"


@dataclass(frozen=True)
class Identity:
    """The local account and host a blob is bound to."""

    account: str
    host: str

    def label(self) -> str:
        return f"{self.account}@{self.host}"


def current_identity() -> Identity:
    """Identity of the current process."""
    try:
        account = getpass.getuser()
    except (KeyError, OSError):
        account = os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
    return Identity(account=account, host=platform.node() or "localhost")


def _hkdf(secret: bytes, info: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=APP_SALT, info=info).derive(secret)


class ProtectionBackend(Protocol):
    """Supplies the key material for a SecureStore."""

    name: str

    def encryption_key(self, identity: Identity) -> bytes:
        """Fernet key (urlsafe base64 of 32 bytes) bound to ``identity``."""
        ...

    def integrity_key(self) -> bytes:
        """Raw HMAC key."""
        ...


class DerivedKeyBackend:
    """
    Keys derived from non-secret values (account, host, application salt).

    Detects tampering and identity mismatch, but anyone who knows the
    account and host name can derive the same keys.
    """

    name = "derived"

    def encryption_key(self, identity: Identity) -> bytes:
        raw = _hkdf(identity.label().encode("utf-8"), _INFO_ENCRYPTION + identity.label().encode("utf-8"))
        return base64.urlsafe_b64encode(raw)

    def integrity_key(self) -> bytes:
        return _hkdf(APP_SALT, _INFO_INTEGRITY)


class InstallationKeyBackend:
    """
    Keys derived from a random per-installation secret.

    The secret lives in a 0600 key file next to the checkpoints and is
    created on first use.
    """

    name = "installation-key"

    def __init__(self, key_path: Path):
        self.key_path = key_path
        self._secret: bytes | None = None

    @classmethod
    def for_state_dir(cls, state_dir: Path) -> "InstallationKeyBackend":
        return cls(state_dir / INSTALLATION_KEY_FILE)

    def secret(self) -> bytes:
        if self._secret is None:
            self._secret = self._load_or_create()
        return self._secret

    def _load_or_create(self) -> bytes:
        if self.key_path.exists():
            data = self.key_path.read_bytes()
            if len(data) != 32:
                raise IntegrityError(f"Installation key is corrupt: {self.key_path}")
            return data

        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        secret = secrets.token_bytes(32)
        try:
            fd = os.open(self.key_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            # Lost the race to another process; use its key
            return self._load_or_create()
        with os.fdopen(fd, "wb") as f:
            f.write(secret)
            f.flush()
            os.fsync(f.fileno())
        logger.info(f"Created installation key at: {self.key_path}")
        return secret

    def encryption_key(self, identity: Identity) -> bytes:
        raw = _hkdf(self.secret(), _INFO_ENCRYPTION + identity.label().encode("utf-8"))
        return base64.urlsafe_b64encode(raw)

    def integrity_key(self) -> bytes:
        return _hkdf(self.secret(), _INFO_INTEGRITY)


def create_backend(name: str, state_dir: Path) -> ProtectionBackend:
    """Create a protection backend by config name."""
    if name == "derived":
        return DerivedKeyBackend()
    if name == "installation-key":
        return InstallationKeyBackend.for_state_dir(state_dir)
    raise ValueError(f"Unknown security backend: {name}")


@dataclass(frozen=True)
class SecureBlob:
    """Format marker, integrity tag and ciphertext. Opaque outside the store."""

    marker: str
    tag: bytes
    ciphertext: bytes

    def encode(self) -> str:
        payload = base64.b64encode(self.tag + self.ciphertext).decode("ascii")
        return f"{self.marker}:{payload}"

    @classmethod
    def decode(cls, text: str) -> "SecureBlob":
        """
        Parse the text container.

        Raises:
            UnsupportedFormatError: missing or unknown format marker
            IntegrityError: malformed, non-canonical or truncated payload
        """
        marker, sep, payload = text.strip().partition(":")
        if not sep:
            raise UnsupportedFormatError("Checkpoint has no format marker")
        if marker not in SUPPORTED_MARKERS:
            raise UnsupportedFormatError(f"Unsupported checkpoint format: {marker[:16]!r}")

        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            raise IntegrityError("Checkpoint payload is not valid base64") from None

        # Reject alternative encodings of the same bytes
        if base64.b64encode(raw).decode("ascii") != payload:
            raise IntegrityError("Checkpoint payload is not canonically encoded")

        if len(raw) <= TAG_SIZE:
            raise IntegrityError("Checkpoint payload is truncated")

        return cls(marker=marker, tag=raw[:TAG_SIZE], ciphertext=raw[TAG_SIZE:])


class SecureStore:
    """Protect/unprotect opaque blobs for one identity."""

    def __init__(self, backend: ProtectionBackend, identity: Identity | None = None):
        self.backend = backend
        self.identity = identity or current_identity()

    def _tag(self, ciphertext: bytes) -> bytes:
        return hmac.new(self.backend.integrity_key(), ciphertext, hashlib.sha256).digest()

    def protect(self, plaintext: bytes) -> SecureBlob:
        """Encrypt and tag ``plaintext``."""
        fernet = Fernet(self.backend.encryption_key(self.identity))
        ciphertext = fernet.encrypt(plaintext)
        return SecureBlob(marker=FORMAT_MARKER, tag=self._tag(ciphertext), ciphertext=ciphertext)

    def unprotect(self, blob: SecureBlob) -> bytes:
        """
        Verify and decrypt a blob.

        Raises:
            UnsupportedFormatError: unknown marker
            IntegrityError: tag mismatch (ciphertext is not decrypted)
            DecryptionError: bound to a different identity
        """
        if blob.marker not in SUPPORTED_MARKERS:
            raise UnsupportedFormatError(f"Unsupported checkpoint format: {blob.marker[:16]!r}")

        if not hmac.compare_digest(self._tag(blob.ciphertext), blob.tag):
            raise IntegrityError("Checkpoint integrity check failed")

        fernet = Fernet(self.backend.encryption_key(self.identity))
        try:
            return fernet.decrypt(blob.ciphertext)
        except InvalidToken:
            raise DecryptionError(
                f"Checkpoint cannot be decrypted as {self.identity.label()} (bound to another account or host)"
            ) from None

    def protect_text(self, plaintext: str) -> str:
        """Protect a string and return the text container."""
        return self.protect(plaintext.encode("utf-8")).encode()

    def unprotect_text(self, text: str) -> str:
        """Decode a text container and return the plaintext string."""
        return self.unprotect(SecureBlob.decode(text)).decode("utf-8")
