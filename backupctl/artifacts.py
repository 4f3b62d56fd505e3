"""Artifact encoding and local filesystem storage."""

import gzip
import hashlib
import os
from pathlib import Path
from typing import Optional, Union

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

NONCE_SIZE = 12
TAG_SIZE = 16


def checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ArtifactCodec:
    """Compresses and encrypts backup bytes on the way to storage.

    Encrypted artifacts are laid out as ``nonce || ciphertext || tag``
    (AES-GCM). Compression is applied before encryption.
    """

    def __init__(self, compress: bool = True, key: Optional[bytes] = None):
        if key is not None and len(key) not in {16, 24, 32}:
            raise ValueError("Encryption key must be 128/192/256-bit")
        self.compress = compress
        self.key = key

    @property
    def encrypt(self) -> bool:
        return self.key is not None

    def encode(self, data: bytes) -> bytes:
        if self.compress:
            data = gzip.compress(data)
        if self.key is not None:
            nonce = os.urandom(NONCE_SIZE)
            encryptor = Cipher(algorithms.AES(self.key), modes.GCM(nonce)).encryptor()
            data = nonce + encryptor.update(data) + encryptor.finalize() + encryptor.tag
        return data

    def decode(self, data: bytes, compressed: bool, encrypted: bool) -> bytes:
        """Reverse ``encode`` for an artifact written with the given flags."""
        if encrypted:
            if self.key is None:
                raise ValueError("Artifact is encrypted but no key is configured")
            if len(data) < NONCE_SIZE + TAG_SIZE:
                raise ValueError("Encrypted artifact is too small to contain nonce + tag")
            nonce, body, tag = data[:NONCE_SIZE], data[NONCE_SIZE:-TAG_SIZE], data[-TAG_SIZE:]
            decryptor = Cipher(algorithms.AES(self.key), modes.GCM(nonce, tag)).decryptor()
            data = decryptor.update(body) + decryptor.finalize()
        if compressed:
            data = gzip.decompress(data)
        return data


class LocalStorage:
    """Stores artifacts as files. Locations are paths, optionally ``file://`` URIs."""

    def __init__(self, root: Optional[Union[str, Path]] = None):
        self.root = Path(root) if root is not None else None

    def _path(self, location: str) -> Path:
        if location.startswith("file://"):
            location = location[len("file://"):]
        path = Path(location)
        if self.root is not None and not path.is_absolute():
            path = self.root / path
        return path

    def exists(self, location: str) -> bool:
        return self._path(location).is_file()

    def read(self, location: str) -> bytes:
        return self._path(location).read_bytes()

    def write(self, location: str, data: bytes) -> None:
        """Write with an atomic replace so a retry never sees a partial artifact."""
        path = self._path(location)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_name(path.name + ".tmp")
        with open(temp_file, "wb") as f:
            f.write(data)
        temp_file.replace(path)

    def delete(self, location: str) -> None:
        self._path(location).unlink(missing_ok=True)
