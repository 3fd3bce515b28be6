"""Envelope encryption for clinical audit payloads.

Each payload is serialised to JSON and sealed with AES-256-GCM under a
fresh per-message key. That key is wrapped with RSA-OAEP (SHA-256) under a
long-lived public key, so only the holder of the private key can read the
records back. The submission API only ever holds the public key; the
decrypt job holds the private key.
"""

import base64
import binascii
import json
import logging
import os
import secrets
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import EnvelopeFormatError, KeyConfigurationError

ENV_PRIVATE_KEY = "DKA_AUDIT_RSA_PRIVATE_KEY"
ENV_PUBLIC_KEY = "DKA_AUDIT_RSA_PUBLIC_KEY"
ENV_PRIVATE_KEY_FILE = "DKA_AUDIT_RSA_PRIVATE_KEY_FILE"
ENV_PUBLIC_KEY_FILE = "DKA_AUDIT_RSA_PUBLIC_KEY_FILE"

AES_KEY_SIZE_BYTES = 32
IV_SIZE_BYTES = 16
TAG_SIZE_BYTES = 16
RSA_KEY_SIZE_BITS = 2048

logger = logging.getLogger(__name__)

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


class KeySource(Enum):
    """Source of RSA key material."""

    ENVIRONMENT = "environment"
    FILE = "file"


class DecryptFailure(Enum):
    """Why a stored envelope could not be opened."""

    MALFORMED_ENVELOPE = "malformed_envelope"
    KEY_UNWRAP = "key_unwrap"
    AUTHENTICATION = "authentication"
    MALFORMED_PAYLOAD = "malformed_payload"


@dataclass(frozen=True)
class Envelope:
    """An AES-256-GCM ciphertext plus the RSA-wrapped key needed to open it."""

    cipher_text: bytes
    wrapped_key: bytes
    iv: bytes
    auth_tag: bytes

    def to_json(self) -> str:
        """Serialise in the layout stored in the ``encrypted_data`` column."""
        return json.dumps(
            {
                "encryptedData": self.cipher_text.hex(),
                "encryptedKey": base64.b64encode(self.wrapped_key).decode("ascii"),
                "iv": self.iv.hex(),
                "authTag": self.auth_tag.hex(),
            }
        )

    @classmethod
    def from_json(cls, text: str | None) -> "Envelope":
        """Parse stored envelope text.

        Raises:
            EnvelopeFormatError: If the text is empty, not JSON, or any field
                is missing or badly encoded.
        """
        if not text:
            raise EnvelopeFormatError("No encrypted data found")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise EnvelopeFormatError(f"Envelope is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise EnvelopeFormatError("Envelope must be a JSON object")

        try:
            return cls(
                cipher_text=bytes.fromhex(data["encryptedData"]),
                wrapped_key=base64.b64decode(data["encryptedKey"], validate=True),
                iv=bytes.fromhex(data["iv"]),
                auth_tag=bytes.fromhex(data["authTag"]),
            )
        except KeyError as e:
            raise EnvelopeFormatError(f"Envelope missing field {e}") from e
        except (TypeError, ValueError, binascii.Error) as e:
            raise EnvelopeFormatError(f"Envelope field badly encoded: {e}") from e


@dataclass(frozen=True)
class DecryptResult:
    """Outcome of opening one envelope: a payload or a failure reason."""

    payload: dict[str, Any] | None = None
    failure: DecryptFailure | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def failed(cls, failure: DecryptFailure, detail: str) -> "DecryptResult":
        return cls(payload=None, failure=failure, detail=detail)


@dataclass(frozen=True)
class KeyMaterial:
    """Immutable RSA key pair loaded once per process.

    Either half may be absent: the submission side only needs the public
    key, the decrypt job needs the private key.
    """

    private_key: rsa.RSAPrivateKey | None = None
    public_key: rsa.RSAPublicKey | None = None

    def __post_init__(self) -> None:
        if self.private_key is None and self.public_key is None:
            raise KeyConfigurationError("Key material requires a private or public key")
        if self.public_key is None:
            object.__setattr__(self, "public_key", self.private_key.public_key())

    @property
    def can_decrypt(self) -> bool:
        return self.private_key is not None

    @classmethod
    def from_pem(
        cls,
        private_pem: bytes | None = None,
        public_pem: bytes | None = None,
    ) -> "KeyMaterial":
        """Build key material from PEM-encoded keys.

        Raises:
            KeyConfigurationError: If a key cannot be parsed or is not RSA.
        """
        private_key = None
        public_key = None

        if private_pem:
            try:
                private_key = serialization.load_pem_private_key(private_pem, password=None)
            except (ValueError, TypeError, UnsupportedAlgorithm) as e:
                raise KeyConfigurationError(f"Invalid RSA private key: {e}") from e
            if not isinstance(private_key, rsa.RSAPrivateKey):
                raise KeyConfigurationError("Private key is not an RSA key")

        if public_pem:
            try:
                public_key = serialization.load_pem_public_key(public_pem)
            except (ValueError, TypeError, UnsupportedAlgorithm) as e:
                raise KeyConfigurationError(f"Invalid RSA public key: {e}") from e
            if not isinstance(public_key, rsa.RSAPublicKey):
                raise KeyConfigurationError("Public key is not an RSA key")

        return cls(private_key=private_key, public_key=public_key)

    @classmethod
    def generate(cls, key_size: int = RSA_KEY_SIZE_BITS) -> "KeyMaterial":
        """Generate a new RSA key pair."""
        return cls(private_key=rsa.generate_private_key(public_exponent=65537, key_size=key_size))

    def private_pem(self) -> bytes:
        if self.private_key is None:
            raise KeyConfigurationError("No private key loaded")
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_pem(self) -> bytes:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )


def pem_to_base64(pem: bytes) -> str:
    """Encode a PEM key as base64 for storage in an environment variable."""
    return base64.b64encode(pem).decode("ascii")


def load_key_material(
    key_source: KeySource = KeySource.ENVIRONMENT,
    require_private: bool = True,
) -> KeyMaterial:
    """Load RSA key material from the environment or from key files.

    Environment variables hold base64-encoded PEM; the ``*_FILE`` variables
    name PEM files on disk.

    Raises:
        KeyConfigurationError: If a required key is missing or invalid.
    """
    if key_source == KeySource.ENVIRONMENT:
        private_pem = _pem_from_env(ENV_PRIVATE_KEY)
        public_pem = _pem_from_env(ENV_PUBLIC_KEY)
    elif key_source == KeySource.FILE:
        private_pem = _pem_from_file(ENV_PRIVATE_KEY_FILE)
        public_pem = _pem_from_file(ENV_PUBLIC_KEY_FILE)
    else:
        raise KeyConfigurationError(f"Unknown key source: {key_source}")

    if require_private and not private_pem:
        variable = ENV_PRIVATE_KEY if key_source == KeySource.ENVIRONMENT else ENV_PRIVATE_KEY_FILE
        raise KeyConfigurationError(
            f"RSA private key not found. Set {variable} to decrypt audit records."
        )
    if not private_pem and not public_pem:
        raise KeyConfigurationError(
            f"RSA key not found. Set {ENV_PUBLIC_KEY} or {ENV_PRIVATE_KEY}."
        )

    material = KeyMaterial.from_pem(private_pem, public_pem)
    logger.info("RSA key material loaded from %s", key_source.value)
    return material


def _pem_from_env(name: str) -> bytes | None:
    value = os.environ.get(name)
    if not value:
        return None
    try:
        return base64.b64decode(value, validate=True)
    except (ValueError, binascii.Error) as e:
        raise KeyConfigurationError(f"Invalid base64 key in {name}: {e}") from e


def _pem_from_file(name: str) -> bytes | None:
    key_file = os.environ.get(name)
    if not key_file:
        return None

    path = Path(key_file)
    if not path.exists():
        raise KeyConfigurationError(f"Key file not found: {key_file}")

    if path.stat().st_mode & 0o077:
        logger.warning("Key file %s has insecure permissions. Should be 0600 or 0400.", key_file)

    return path.read_bytes()


class EnvelopeCipher:
    """Seals and opens audit payloads with per-message AES keys."""

    def __init__(self, key_material: KeyMaterial):
        if not isinstance(key_material, KeyMaterial):
            raise KeyConfigurationError("EnvelopeCipher requires KeyMaterial")
        self._keys = key_material

    @property
    def can_decrypt(self) -> bool:
        return self._keys.can_decrypt

    def encrypt(self, record: dict[str, Any]) -> Envelope:
        """Encrypt a JSON-serialisable record into a new Envelope."""
        key = secrets.token_bytes(AES_KEY_SIZE_BYTES)
        iv = secrets.token_bytes(IV_SIZE_BYTES)
        sealed = AESGCM(key).encrypt(iv, json.dumps(record).encode("utf-8"), None)
        wrapped_key = self._keys.public_key.encrypt(key, _OAEP)
        return Envelope(
            cipher_text=sealed[:-TAG_SIZE_BYTES],
            wrapped_key=wrapped_key,
            iv=iv,
            auth_tag=sealed[-TAG_SIZE_BYTES:],
        )

    def decrypt(self, envelope: Envelope) -> DecryptResult:
        """Open an envelope.

        Never raises for a bad record; corruption, tampering or a wrong key
        all come back as a failed DecryptResult with no plaintext.

        Raises:
            KeyConfigurationError: If no private key was configured.
        """
        if not self._keys.can_decrypt:
            raise KeyConfigurationError("Decryption requires an RSA private key")

        try:
            key = self._keys.private_key.decrypt(envelope.wrapped_key, _OAEP)
        except ValueError as e:
            return DecryptResult.failed(DecryptFailure.KEY_UNWRAP, str(e) or "RSA decryption failed")

        if len(key) != AES_KEY_SIZE_BYTES:
            return DecryptResult.failed(
                DecryptFailure.KEY_UNWRAP, f"Unwrapped key must be 32 bytes, got {len(key)}"
            )

        try:
            plaintext = AESGCM(key).decrypt(envelope.iv, envelope.cipher_text + envelope.auth_tag, None)
        except InvalidTag:
            return DecryptResult.failed(DecryptFailure.AUTHENTICATION, "Authentication tag mismatch")
        except ValueError as e:
            return DecryptResult.failed(DecryptFailure.AUTHENTICATION, str(e))

        try:
            payload = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return DecryptResult.failed(DecryptFailure.MALFORMED_PAYLOAD, str(e))
        if not isinstance(payload, dict):
            return DecryptResult.failed(
                DecryptFailure.MALFORMED_PAYLOAD, "Payload is not a JSON object"
            )

        return DecryptResult(payload=payload)

    def open_stored(self, text: str | None) -> DecryptResult:
        """Parse stored envelope text and decrypt it."""
        try:
            envelope = Envelope.from_json(text)
        except EnvelopeFormatError as e:
            return DecryptResult.failed(DecryptFailure.MALFORMED_ENVELOPE, str(e))
        return self.decrypt(envelope)

    def seal(self, record: dict[str, Any]) -> str:
        """Encrypt a record and return the stored envelope text."""
        return self.encrypt(record).to_json()
