"""
Tests for File Validator

Tests artifact checks and chunked checksum computation for box files.
"""

import hashlib
import os
import pytest

from vagabond.exceptions import FileValidationError
from vagabond.file_validator import FileValidator


class TestFileValidator:
    """Test cases for box file validation"""

    def setup_method(self):
        """Setup for each test"""
        self.validator = FileValidator(chunk_size=7)

    def test_valid_artifact(self, tmp_path):
        path = tmp_path / "demo.box"
        path.write_bytes(b"box-bytes")

        result = self.validator.validate_artifact(str(path))

        assert result.is_valid == True
        assert result.size_bytes == 9

    def test_missing_file(self, tmp_path):
        result = self.validator.validate_artifact(str(tmp_path / "missing.box"))

        assert result.is_valid == False
        assert result.validation_type == "existence"
        assert "File not found" in result.error_message

    def test_directory_is_rejected(self, tmp_path):
        result = self.validator.validate_artifact(str(tmp_path))

        assert result.is_valid == False
        assert result.validation_type == "type"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.box"
        path.write_bytes(b"")

        result = self.validator.validate_artifact(str(path))

        assert result.is_valid == False
        assert result.validation_type == "size"

    @pytest.mark.skipif(os.name != "posix" or os.geteuid() == 0, reason="needs non-root POSIX permissions")
    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "locked.box"
        path.write_bytes(b"data")
        path.chmod(0)

        try:
            result = self.validator.validate_artifact(str(path))
        finally:
            path.chmod(0o600)

        assert result.is_valid == False
        assert result.validation_type == "permissions"

    def test_require_valid_raises(self, tmp_path):
        missing = str(tmp_path / "missing.box")

        with pytest.raises(FileValidationError) as exc_info:
            self.validator.require_valid(missing)

        assert exc_info.value.file_path == missing

    def test_require_valid_returns_size(self, tmp_path):
        path = tmp_path / "demo.box"
        path.write_bytes(b"x" * 20)

        assert self.validator.require_valid(str(path)) == 20

    def test_checksum_matches_sha256(self, tmp_path):
        """Chunked hashing gives the same digest as hashing all at once"""
        data = os.urandom(1000)
        path = tmp_path / "demo.box"
        path.write_bytes(data)

        assert self.validator.compute_checksum(str(path)) == hashlib.sha256(data).hexdigest()
        assert FileValidator.CHECKSUM_TYPE == "sha256"
