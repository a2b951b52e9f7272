"""
Validation of local box artifacts before upload.
"""

import hashlib
import os
from dataclasses import dataclass
from typing import Optional

from .exceptions import FileValidationError


@dataclass
class ValidationResult:
    """File validation result"""
    is_valid: bool
    error_message: Optional[str] = None
    file_path: Optional[str] = None
    validation_type: Optional[str] = None
    size_bytes: Optional[int] = None


class FileValidator:
    """Checks that a box file can be streamed and computes its checksum"""

    CHECKSUM_TYPE = "sha256"

    def __init__(self, chunk_size: int = 1024 * 1024):
        self.chunk_size = chunk_size

    def validate_artifact(self, file_path: str) -> ValidationResult:
        """Ensure the artifact exists, is a regular non-empty file and is readable"""
        if not os.path.exists(file_path):
            return ValidationResult(
                is_valid=False,
                error_message=f"File not found: {file_path}",
                file_path=file_path,
                validation_type="existence"
            )

        if not os.path.isfile(file_path):
            return ValidationResult(
                is_valid=False,
                error_message=f"Not a regular file: {file_path}",
                file_path=file_path,
                validation_type="type"
            )

        size = os.path.getsize(file_path)
        if size == 0:
            return ValidationResult(
                is_valid=False,
                error_message=f"File is empty: {file_path}",
                file_path=file_path,
                validation_type="size"
            )

        if not os.access(file_path, os.R_OK):
            return ValidationResult(
                is_valid=False,
                error_message=f"File is not readable: {file_path}",
                file_path=file_path,
                validation_type="permissions"
            )

        return ValidationResult(is_valid=True, file_path=file_path, size_bytes=size)

    def require_valid(self, file_path: str) -> int:
        """Validate and return the file size, raising FileValidationError otherwise"""
        result = self.validate_artifact(file_path)
        if not result.is_valid:
            raise FileValidationError(result.error_message, file_path=file_path)
        return result.size_bytes

    def compute_checksum(self, file_path: str) -> str:
        """SHA-256 of the file, read in chunks so large boxes are never buffered"""
        digest = hashlib.sha256()
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(self.chunk_size), b""):
                digest.update(chunk)
        return digest.hexdigest()
