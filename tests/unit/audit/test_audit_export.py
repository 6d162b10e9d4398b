"""
Tests for compliance exports.
"""

import csv
import io
import json

import pytest

from lognexus.core.audit import CSV_HEADER, AuditChain
from lognexus.core.exceptions import ExportFormatError
from lognexus.models.audit import AuditAction, AuditEventType


@pytest.fixture
def chain(bus, clock):
    chain = AuditChain(bus, secret_key="test-secret", clock=clock, retention_policies=[])
    chain.log_event(
        AuditEventType.DATA_EXPORT,
        AuditAction.EXPORT,
        description='Exported "Q4" report, all regions',
        user_id="alice",
        compliance_tags=["SOX", "GDPR"],
    )
    chain.log_event(AuditEventType.USER_LOGIN, AuditAction.LOGIN, user_id="bob")
    return chain


class TestExport:
    """JSON and CSV export formats."""

    def test_json_export(self, chain):
        data = json.loads(chain.export("json"))

        assert set(data) == {"export_timestamp", "trail_stats", "integrity_check", "entries"}
        assert data["integrity_check"]["is_valid"] is True
        assert len(data["entries"]) == 2
        assert data["trail_stats"]["total_entries"] == 2

    def test_csv_export(self, chain):
        rows = list(csv.reader(io.StringIO(chain.export("csv"))))

        assert rows[0] == CSV_HEADER
        assert len(rows) == 3
        first = dict(zip(CSV_HEADER, rows[1]))
        assert first["eventType"] == "data.export"
        assert first["description"] == 'Exported "Q4" report, all regions'
        assert first["complianceTags"] == "SOX;GDPR"
        assert first["userId"] == "alice"

    def test_csv_description_always_quoted(self, chain):
        lines = chain.export("csv").splitlines()
        assert '"user.login performed"' in lines[2]

    def test_unsupported_format(self, chain):
        with pytest.raises(ExportFormatError) as exc_info:
            chain.export("xml")
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_export_to_file(self, chain, tmp_path):
        path = tmp_path / "audit.json"

        written = await chain.export_to_file(str(path), "json")

        content = path.read_text(encoding="utf-8")
        assert written == len(content)
        assert json.loads(content)["integrity_check"]["is_valid"] is True
