"""Encrypted store for credentials referenced from the config file.

Values such as ``FIREBASE_API_KEY`` can live here instead of the
environment; :func:`~wifi_survey.config.load_config` consults them when
resolving ``${VAR}`` placeholders.

File layout::

    [8 bytes:  magic "WSURVSEC"]
    [1 byte:   version = 0x01]
    [16 bytes: salt, used as AES-GCM associated data]
    [12 bytes: nonce]
    [N bytes:  AES-256-GCM ciphertext of an orjson object, tag appended]

The 32-byte master key lives in a separate file with mode 0600.
"""

from __future__ import annotations

import os
from pathlib import Path

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

MAGIC = b"WSURVSEC"
VERSION = 0x01
KEY_LEN = 32
SALT_LEN = 16
NONCE_LEN = 12
_HEADER_LEN = len(MAGIC) + 1 + SALT_LEN + NONCE_LEN


def _write_private(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    os.chmod(path, 0o600)


def read_key(key_file: str | Path) -> bytes:
    """Return the master key stored in *key_file*."""
    kf = Path(key_file)
    if not kf.exists():
        raise FileNotFoundError(f"Key file not found: {key_file}")
    key = kf.read_bytes()
    if len(key) != KEY_LEN:
        raise ValueError(f"Key file must be exactly {KEY_LEN} bytes, got {len(key)}")
    return key


def ensure_key(key_file: str | Path) -> bytes:
    """Return the key in *key_file*, generating a new one if it is missing."""
    kf = Path(key_file)
    if not kf.exists():
        _write_private(kf, AESGCM.generate_key(bit_length=KEY_LEN * 8))
    return read_key(kf)


class SecretsFile:
    """An encrypted name → value mapping on disk.

    Parameters
    ----------
    path:
        Location of the encrypted file.
    key:
        32-byte master key.
    """

    def __init__(self, path: str | Path, key: bytes) -> None:
        self.path = Path(path)
        self._key = key

    @classmethod
    def open(cls, path: str | Path, key_file: str | Path) -> "SecretsFile":
        return cls(path, read_key(key_file))

    def load(self) -> dict[str, str]:
        """Decrypt and return every stored secret."""
        data = self.path.read_bytes()
        if data[:len(MAGIC)] != MAGIC:
            raise ValueError(f"{self.path} is not a secrets file (bad magic)")
        version = data[len(MAGIC)]
        if version != VERSION:
            raise ValueError(f"Unsupported secrets file version: {version}")

        offset = len(MAGIC) + 1
        salt = data[offset:offset + SALT_LEN]
        nonce = data[offset + SALT_LEN:_HEADER_LEN]
        try:
            plaintext = AESGCM(self._key).decrypt(nonce, data[_HEADER_LEN:], salt)
        except InvalidTag as exc:
            raise ValueError(f"Cannot decrypt {self.path}: wrong key or corrupted file") from exc
        return orjson.loads(plaintext)

    def save(self, values: dict[str, str]) -> None:
        """Encrypt *values* with a fresh salt and nonce and replace the file."""
        salt = os.urandom(SALT_LEN)
        nonce = os.urandom(NONCE_LEN)
        ciphertext = AESGCM(self._key).encrypt(nonce, orjson.dumps(values), salt)
        _write_private(self.path, MAGIC + bytes([VERSION]) + salt + nonce + ciphertext)

    def names(self) -> list[str]:
        return sorted(self.load())

    def set(self, name: str, value: str) -> None:
        values = self.load()
        values[name] = value
        self.save(values)

    def remove(self, name: str) -> bool:
        """Delete *name*; returns ``False`` if it was not stored."""
        values = self.load()
        if name not in values:
            return False
        del values[name]
        self.save(values)
        return True

    def rekey(self, new_key: bytes) -> "SecretsFile":
        """Re-encrypt the contents under *new_key* and return the new handle."""
        values = self.load()
        rekeyed = SecretsFile(self.path, new_key)
        rekeyed.save(values)
        return rekeyed


def init_secrets(path: str | Path, key_file: str | Path) -> SecretsFile:
    """Create an empty secrets file, generating the key file if needed."""
    store = SecretsFile(path, ensure_key(key_file))
    store.save({})
    return store


def load_secrets(path: str | Path, key_file: str | Path) -> dict[str, str]:
    return SecretsFile.open(path, key_file).load()
