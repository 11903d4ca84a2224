"""
Artifact codec: gzip compression, AES-256-GCM encryption and SHA-256 checksums
Layout of an encoded artifact: MAGIC | nonce(12) | ciphertext | tag(16)
"""

import hashlib
import os
import zlib
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Iterator, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .error_models import ArtifactCorruptError, ValidationError

MAGIC = b"DRA1"
NONCE_SIZE = 12
TAG_SIZE = 16
ARTIFACT_SUFFIX = ".dra"
CHUNK_SIZE = 1024 * 1024
# gzip container for zlib
GZIP_WBITS = 31


def artifact_prefix(workload_id: str) -> str:
    namespace, name = workload_id.split("/", 1)
    return f"backups/{namespace}/{name}/"


def artifact_key(workload_id: str, sequence: int) -> str:
    return f"{artifact_prefix(workload_id)}{sequence:012d}{ARTIFACT_SUFFIX}"


def artifact_sequence(workload_id: str, key: str) -> Optional[int]:
    """Sequence number encoded in an artifact key, or None for foreign keys"""
    prefix = artifact_prefix(workload_id)
    if not key.startswith(prefix) or not key.endswith(ARTIFACT_SUFFIX):
        return None
    stem = key[len(prefix):-len(ARTIFACT_SUFFIX)]
    if not stem.isdigit():
        return None
    return int(stem)


def checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class KeyProvider:
    """Derives workload-scoped data keys from the master key ring"""

    def __init__(self, key_ring: Dict[str, bytes], current_key_id: str):
        if current_key_id not in key_ring:
            raise ValidationError(f"Unknown current key id {current_key_id}", field="master_key_id")
        self._key_ring = dict(key_ring)
        self.current_key_id = current_key_id
        self._cache: Dict[Tuple[str, str], bytes] = {}

    def workload_key(self, workload_id: str, key_id: Optional[str] = None) -> Tuple[str, bytes]:
        key_id = key_id or self.current_key_id
        cached = self._cache.get((key_id, workload_id))
        if cached is not None:
            return key_id, cached
        try:
            master = self._key_ring[key_id]
        except KeyError:
            raise ValidationError(f"Encryption key {key_id} is not in the key ring", field="encryption_key_id")
        derived = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=f"dr-orchestrator:{key_id}:{workload_id}".encode("utf-8"),
        ).derive(master)
        self._cache[(key_id, workload_id)] = derived
        return key_id, derived


@dataclass
class EncodedArtifact:
    data: bytes
    checksum: str
    size_bytes: int
    key_id: str
    plaintext_bytes: int


class ArtifactEncoder:
    """
    Streams a dump through gzip and AES-GCM. The artifact key is bound as
    associated data, so an artifact moved to another key fails to decrypt.
    """

    def __init__(self, key_provider: KeyProvider, compression_level: int = 6):
        self.key_provider = key_provider
        self.compression_level = compression_level

    async def encode(self, workload_id: str, key: str, chunks: AsyncIterator[bytes]) -> EncodedArtifact:
        key_id, data_key = self.key_provider.workload_key(workload_id)
        nonce = os.urandom(NONCE_SIZE)
        encryptor = Cipher(algorithms.AES(data_key), modes.GCM(nonce)).encryptor()
        encryptor.authenticate_additional_data(key.encode("utf-8"))
        compressor = zlib.compressobj(self.compression_level, zlib.DEFLATED, GZIP_WBITS)

        out = bytearray(MAGIC)
        out += nonce
        plaintext_bytes = 0
        async for chunk in chunks:
            if not chunk:
                continue
            plaintext_bytes += len(chunk)
            out += encryptor.update(compressor.compress(chunk))
        out += encryptor.update(compressor.flush())
        out += encryptor.finalize()
        out += encryptor.tag

        data = bytes(out)
        return EncodedArtifact(
            data=data,
            checksum=checksum(data),
            size_bytes=len(data),
            key_id=key_id,
            plaintext_bytes=plaintext_bytes,
        )

    def decode(self, workload_id: str, key: str, data: bytes, key_id: str) -> Iterator[bytes]:
        """
        Authenticate and decrypt the whole artifact, then yield decompressed
        chunks. Nothing is yielded from an artifact that fails authentication.
        """
        if len(data) < len(MAGIC) + NONCE_SIZE + TAG_SIZE or not data.startswith(MAGIC):
            raise ArtifactCorruptError(key, expected=None, actual=None)
        _, data_key = self.key_provider.workload_key(workload_id, key_id)
        header = len(MAGIC) + NONCE_SIZE
        nonce = data[len(MAGIC):header]
        tag = data[-TAG_SIZE:]
        decryptor = Cipher(algorithms.AES(data_key), modes.GCM(nonce, tag)).decryptor()
        decryptor.authenticate_additional_data(key.encode("utf-8"))
        try:
            compressed = decryptor.update(data[header:-TAG_SIZE]) + decryptor.finalize()
        except InvalidTag as e:
            raise ArtifactCorruptError(key, expected=None, actual=None) from e
        return self._decompress(key, compressed)

    @staticmethod
    def _decompress(key: str, compressed: bytes) -> Iterator[bytes]:
        decompressor = zlib.decompressobj(GZIP_WBITS)
        try:
            for offset in range(0, len(compressed), CHUNK_SIZE):
                piece = decompressor.decompress(compressed[offset:offset + CHUNK_SIZE])
                if piece:
                    yield piece
            tail = decompressor.flush()
            if tail:
                yield tail
        except zlib.error as e:
            raise ArtifactCorruptError(key, expected=None, actual=str(e)) from e
