"""SHA-256 verification utilities for image integrity checking."""

import hashlib
import re
from pathlib import Path
import logging

SHA256_PATTERN = re.compile(r"^[A-Fa-f0-9]{64}$")


def validate_sha256(digest: str) -> str:
    """Normalize a hex digest to lowercase.

    Raises:
        ValueError: If digest is not a 64-char hex string
    """
    if not isinstance(digest, str) or not SHA256_PATTERN.match(digest.strip()):
        raise ValueError(f"Invalid SHA-256 format: {digest} (must be 64-char hex)")
    return digest.strip().lower()


def compute_sha256(file_path: Path, chunk_size: int = 1024 * 1024) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to file to hash
        chunk_size: Read buffer size

    Returns:
        64-character lowercase hex digest

    Raises:
        FileNotFoundError: If file doesn't exist
        OSError: If file read fails
    """
    logger = logging.getLogger("flasher.verification")
    sha256 = hashlib.sha256()

    try:
        with open(file_path, "rb") as f:
            while chunk := f.read(chunk_size):
                sha256.update(chunk)

        result = sha256.hexdigest()
        logger.debug(f"Computed SHA-256 for {file_path.name}: {result}")
        return result

    except FileNotFoundError:
        logger.error(f"File not found: {file_path}")
        raise
    except OSError as e:
        logger.error(f"Failed to read file {file_path}: {e}")
        raise


def verify_sha256(file_path: Path, expected_sha256: str) -> bool:
    """Verify file SHA-256 matches expected value (case-insensitive).

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If expected_sha256 format is invalid
    """
    logger = logging.getLogger("flasher.verification")
    expected = validate_sha256(expected_sha256)
    actual = compute_sha256(file_path)

    match = actual == expected
    if match:
        logger.info(f"SHA-256 verification passed for {file_path.name}")
    else:
        logger.error(
            f"SHA-256 mismatch for {file_path.name}: expected {expected}, got {actual}"
        )
    return match


def parse_checksum_file(text: str) -> dict[str, str]:
    """Parse SHA256SUMS-style text into ``{filename: digest}``.

    Accepts ``<hash>  <name>`` and binary-mode ``<hash> *<name>`` lines; a
    single bare hash (``.sha256`` files) maps to the empty filename.
    """
    checksums: dict[str, str] = {}
    for line in text.splitlines():
        parts = line.split()
        if not parts or line.lstrip().startswith("#"):
            continue
        if not SHA256_PATTERN.match(parts[0]):
            continue
        name = parts[1].lstrip("*") if len(parts) >= 2 else ""
        checksums[Path(name).name if name else ""] = parts[0].lower()
    return checksums
