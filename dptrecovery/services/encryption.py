"""Per-file encryption of backup artifacts.

Layout of an encrypted artifact: ``salt (32B) || iv (16B) || ciphertext``.
For aes-256-gcm the 16-byte authentication tag is the last part of the
ciphertext. The key is derived from a passphrase with PBKDF2-HMAC-SHA256 and
is never stored. A SHA-256 checksum of the whole artifact is written next to
it (``<artifact>.sha256``) and checked before any restore uses it.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import hashlib
import logging
import os
from pathlib import Path
import tempfile
from typing import Iterator

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from dptrecovery.core.config import get_settings
from dptrecovery.core.errors import (
    ChecksumMismatchError,
    ConfigurationError,
    DecryptionError,
    WeakSecretError,
)


logger = logging.getLogger(__name__)


ENCRYPTED_SUFFIX = ".enc"
CHECKSUM_SUFFIX = ".sha256"
SALT_LENGTH = 32
IV_LENGTH = 16
KEY_LENGTH = 32
GCM_TAG_LENGTH = 16
MIN_SECRET_LENGTH = 32
CHUNK_SIZE = 1024 * 1024

ALGORITHM_GCM = "aes-256-gcm"
ALGORITHM_CBC = "aes-256-cbc"
SUPPORTED_ALGORITHMS = (ALGORITHM_GCM, ALGORITHM_CBC)


@dataclass(frozen=True)
class EncryptionEnvelope:
    # Everything needed to decrypt and verify an artifact, minus the secret.
    source_path: str
    encrypted_path: str
    algorithm: str
    salt_hex: str
    iv_hex: str
    checksum_sha256: str
    original_size: int
    encrypted_size: int
    reused: bool = False


def validate_secret(secret: str | None) -> str:
    # Fail fast on missing or weak secrets instead of deriving a weak key.
    if not secret:
        raise ConfigurationError("BACKUP_ENCRYPTION_KEY is required for backup encryption")
    if len(secret) < MIN_SECRET_LENGTH:
        raise WeakSecretError(
            f"BACKUP_ENCRYPTION_KEY must be at least {MIN_SECRET_LENGTH} characters"
        )
    return secret


def _resolve_secret(secret: str | None) -> str:
    return validate_secret(secret if secret is not None else get_settings().backup_encryption_key)


def _resolve_algorithm(algorithm: str | None) -> str:
    resolved = (algorithm or get_settings().backup_encryption_algorithm).lower()
    if resolved not in SUPPORTED_ALGORITHMS:
        raise ConfigurationError(f"unsupported encryption algorithm: {resolved}")
    return resolved


def derive_key(secret: str, salt: bytes, iterations: int | None = None) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations or get_settings().backup_encryption_iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


def sha256_file(path: Path) -> str:
    # Compute streaming checksums for large backup artifacts.
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def encrypted_path_for(source: Path) -> Path:
    return source.with_name(source.name + ENCRYPTED_SUFFIX)


def checksum_path_for(encrypted: Path) -> Path:
    return encrypted.with_name(encrypted.name + CHECKSUM_SUFFIX)


def is_encrypted(path: Path) -> bool:
    return path.name.endswith(ENCRYPTED_SUFFIX)


def read_recorded_checksum(encrypted: Path) -> str | None:
    sidecar = checksum_path_for(encrypted)
    if not sidecar.exists():
        return None
    content = sidecar.read_text(encoding="utf-8").strip()
    return content.split()[0] if content else None


def _write_checksum(encrypted: Path, checksum: str) -> None:
    # sha256sum-compatible sidecar so operators can verify with stock tools.
    checksum_path_for(encrypted).write_text(f"{checksum}  {encrypted.name}\n", encoding="utf-8")


def _build_cipher(algorithm: str, key: bytes, iv: bytes, tag: bytes | None = None) -> Cipher:
    if algorithm == ALGORITHM_GCM:
        return Cipher(algorithms.AES(key), modes.GCM(iv, tag))
    return Cipher(algorithms.AES(key), modes.CBC(iv))


def inspect_encrypted_file(
    encrypted: Path,
    *,
    source: Path | None = None,
    algorithm: str | None = None,
) -> EncryptionEnvelope:
    """Re-derive salt, iv and checksum from an existing artifact without decrypting it."""
    encrypted_size = encrypted.stat().st_size
    if encrypted_size < SALT_LENGTH + IV_LENGTH:
        raise DecryptionError(f"Encrypted artifact is too small to contain salt + iv: {encrypted}")
    with encrypted.open("rb") as handle:
        salt = handle.read(SALT_LENGTH)
        iv = handle.read(IV_LENGTH)
    original_size = source.stat().st_size if source is not None and source.exists() else 0
    return EncryptionEnvelope(
        source_path=str(source) if source is not None else "",
        encrypted_path=str(encrypted),
        algorithm=_resolve_algorithm(algorithm),
        salt_hex=salt.hex(),
        iv_hex=iv.hex(),
        checksum_sha256=sha256_file(encrypted),
        original_size=original_size,
        encrypted_size=encrypted_size,
        reused=True,
    )


def encrypt_file(
    source: Path,
    secret: str | None = None,
    *,
    destination: Path | None = None,
    algorithm: str | None = None,
    iterations: int | None = None,
    reuse_existing: bool = True,
) -> EncryptionEnvelope:
    """Encrypt ``source`` into ``<source>.enc`` and record its checksum.

    When the encrypted artifact already exists and ``reuse_existing`` is set,
    its parameters are read back instead of encrypting again.
    """
    secret = _resolve_secret(secret)
    algorithm = _resolve_algorithm(algorithm)
    destination = destination or encrypted_path_for(source)

    if reuse_existing and destination.exists():
        logger.info("encryption_reused path=%s", destination)
        envelope = inspect_encrypted_file(destination, source=source, algorithm=algorithm)
        if read_recorded_checksum(destination) is None:
            _write_checksum(destination, envelope.checksum_sha256)
        return envelope

    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = derive_key(secret, salt, iterations)
    encryptor = _build_cipher(algorithm, key, iv).encryptor()
    padder = padding.PKCS7(algorithms.AES.block_size).padder() if algorithm == ALGORITHM_CBC else None

    # Write to a partial file first so an interrupted run never leaves a reusable artifact.
    partial = destination.with_name(destination.name + ".partial")
    digest = hashlib.sha256()
    original_size = 0
    try:
        with source.open("rb") as input_handle, partial.open("wb") as output_handle:

            def _emit(data: bytes) -> None:
                if data:
                    output_handle.write(data)
                    digest.update(data)

            _emit(salt)
            _emit(iv)
            for chunk in iter(lambda: input_handle.read(CHUNK_SIZE), b""):
                original_size += len(chunk)
                if padder is not None:
                    chunk = padder.update(chunk)
                _emit(encryptor.update(chunk))
            if padder is not None:
                _emit(encryptor.update(padder.finalize()))
            _emit(encryptor.finalize())
            if algorithm == ALGORITHM_GCM:
                _emit(encryptor.tag)
        os.replace(partial, destination)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise

    checksum = digest.hexdigest()
    _write_checksum(destination, checksum)
    envelope = EncryptionEnvelope(
        source_path=str(source),
        encrypted_path=str(destination),
        algorithm=algorithm,
        salt_hex=salt.hex(),
        iv_hex=iv.hex(),
        checksum_sha256=checksum,
        original_size=original_size,
        encrypted_size=destination.stat().st_size,
    )
    logger.info(
        "encryption_complete path=%s algorithm=%s original_bytes=%s encrypted_bytes=%s checksum=%s",
        destination,
        algorithm,
        envelope.original_size,
        envelope.encrypted_size,
        checksum,
    )
    return envelope


def verify_checksum(encrypted: Path, expected: str | None = None) -> str:
    # Refuse to use an artifact whose bytes differ from the recorded checksum.
    actual = sha256_file(encrypted)
    expected = expected or read_recorded_checksum(encrypted)
    if expected is None:
        logger.warning("checksum_unverified path=%s reason=no_recorded_checksum", encrypted)
        return actual
    if actual.lower() != expected.lower():
        raise ChecksumMismatchError(
            f"Checksum mismatch for {encrypted.name}: expected {expected}, got {actual}"
        )
    return actual


def decrypt_to_path(
    encrypted: Path,
    destination: Path,
    secret: str | None = None,
    *,
    algorithm: str | None = None,
    iterations: int | None = None,
    expected_checksum: str | None = None,
) -> Path:
    """Verify and decrypt an artifact into ``destination``."""
    secret = _resolve_secret(secret)
    algorithm = _resolve_algorithm(algorithm)
    verify_checksum(encrypted, expected_checksum)

    total_size = encrypted.stat().st_size
    header = SALT_LENGTH + IV_LENGTH
    trailer = GCM_TAG_LENGTH if algorithm == ALGORITHM_GCM else 0
    if total_size < header + trailer:
        raise DecryptionError(f"Encrypted artifact is too small: {encrypted}")

    with encrypted.open("rb") as input_handle:
        salt = input_handle.read(SALT_LENGTH)
        iv = input_handle.read(IV_LENGTH)
        tag = None
        if trailer:
            input_handle.seek(total_size - trailer)
            tag = input_handle.read(trailer)
            input_handle.seek(header)
        key = derive_key(secret, salt, iterations)
        decryptor = _build_cipher(algorithm, key, iv, tag).decryptor()
        unpadder = (
            padding.PKCS7(algorithms.AES.block_size).unpadder() if algorithm == ALGORITHM_CBC else None
        )
        remaining = total_size - header - trailer
        try:
            with destination.open("wb") as output_handle:
                while remaining > 0:
                    chunk = input_handle.read(min(CHUNK_SIZE, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    plain = decryptor.update(chunk)
                    if unpadder is not None:
                        plain = unpadder.update(plain)
                    output_handle.write(plain)
                plain = decryptor.finalize()
                if unpadder is not None:
                    plain = unpadder.update(plain) + unpadder.finalize()
                output_handle.write(plain)
        except (InvalidTag, ValueError) as exc:
            destination.unlink(missing_ok=True)
            raise DecryptionError(
                f"Could not decrypt {encrypted.name}: wrong secret or corrupted artifact"
            ) from exc
    return destination


def decrypt_file(
    encrypted: Path,
    secret: str | None = None,
    *,
    algorithm: str | None = None,
    iterations: int | None = None,
    expected_checksum: str | None = None,
) -> bytes:
    with tempfile.TemporaryDirectory(prefix="dpt-decrypt-") as workdir:
        target = Path(workdir) / "plain"
        decrypt_to_path(
            encrypted,
            target,
            secret,
            algorithm=algorithm,
            iterations=iterations,
            expected_checksum=expected_checksum,
        )
        return target.read_bytes()


@contextmanager
def materialize_backup(path: Path, secret: str | None = None) -> Iterator[Path]:
    """Yield a plaintext dump path, decrypting ``.enc`` artifacts into a temp dir."""
    if not is_encrypted(path):
        yield path
        return
    with tempfile.TemporaryDirectory(prefix="dpt-restore-") as workdir:
        target = Path(workdir) / path.name[: -len(ENCRYPTED_SUFFIX)]
        decrypt_to_path(path, target, secret)
        yield target
