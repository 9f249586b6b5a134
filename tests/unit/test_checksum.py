"""
Unit tests for checksums and the reprocessing policy
"""

import hashlib
import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock
from engine.checksum import ChecksumService, calculate_checksum
from models.base import ETLState
from schemas.state import ETLFileRecord


def _file(state: ETLState, age_days: float) -> ETLFileRecord:
    return ETLFileRecord(
        id="file-1",
        organization_id="org-1",
        filename="loads.csv",
        checksum="abc",
        current_state=state,
        version=1,
        uploaded_at=datetime.utcnow() - timedelta(days=age_days),
    )


class TestCalculateChecksum:

    def test_sha256_default(self):
        assert calculate_checksum(b"hello") == hashlib.sha256(b"hello").hexdigest()

    def test_strings_are_utf8(self):
        assert calculate_checksum("ração") == hashlib.sha256("ração".encode("utf-8")).hexdigest()

    def test_md5(self):
        assert calculate_checksum(b"hello", "MD5") == hashlib.md5(b"hello").hexdigest()

    def test_unsupported_algorithm(self):
        with pytest.raises(ValueError):
            calculate_checksum(b"hello", "sha1")

    @pytest.mark.asyncio
    async def test_file_checksum_streams_content(self, tmp_path):
        path = tmp_path / "loads.csv"
        content = b"data;equipamento;curral\n" * 10_000
        path.write_bytes(content)

        service = ChecksumService(MagicMock())
        assert await service.calculate_file_checksum(str(path)) == hashlib.sha256(content).hexdigest()


class TestReprocessingPolicy:
    """Decision against the most recent upload with the same checksum"""

    def setup_method(self):
        self.service = ChecksumService(MagicMock(), reprocess_after_days=30)

    def test_failed_or_cancelled_is_reprocessable(self):
        assert self.service.should_allow_reprocessing(_file(ETLState.FAILED, 1))
        assert self.service.should_allow_reprocessing(_file(ETLState.CANCELLED, 1))

    def test_recently_loaded_is_blocked(self):
        assert not self.service.should_allow_reprocessing(_file(ETLState.LOADED, 2))
        assert not self.service.should_allow_reprocessing(_file(ETLState.APPROVED, 2))

    def test_old_upload_is_reprocessable(self):
        assert self.service.should_allow_reprocessing(_file(ETLState.LOADED, 40))

    def test_in_flight_upload_is_reprocessable(self):
        assert self.service.should_allow_reprocessing(_file(ETLState.PARSING, 0))
