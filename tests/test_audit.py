"""
Tests for the Audit Logger.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from lifecycle_engine.audit import AuditLogger
from lifecycle_engine.models import TaskType, WorkflowInstance, WorkflowKind


@pytest.fixture
def instance():
    return WorkflowInstance(id="wf-1", kind=WorkflowKind.OFFBOARDING, subject_identity="u123")


class TestAuditLogger:
    """In-memory and file-backed audit logging."""

    def test_record_transition_in_memory(self, instance):
        audit = AuditLogger()

        record_id = audit.record_transition(
            instance, "task_completed", task_type=TaskType.DISABLE_ACCOUNT,
            from_state="RUNNING", to_state="COMPLETED", attempt=1,
        )

        assert record_id.startswith("audit_")
        [record] = audit.get_events()
        assert record.workflow_id == "wf-1"
        assert record.kind == WorkflowKind.OFFBOARDING
        assert record.task_type == TaskType.DISABLE_ACCOUNT
        assert record.to_state == "COMPLETED"

    def test_records_written_to_daily_jsonl(self, tmp_path, instance):
        audit = AuditLogger(tmp_path / "audit")
        audit.record_transition(instance, "workflow_started")
        audit.record_transition(instance, "workflow_finished")

        files = list((tmp_path / "audit").glob("audit_*.jsonl"))
        assert len(files) == 1
        lines = files[0].read_text().splitlines()
        assert [json.loads(line)["event_type"] for line in lines] == [
            "workflow_started", "workflow_finished",
        ]

    def test_records_survive_restart(self, tmp_path, instance):
        AuditLogger(tmp_path).record_transition(instance, "workflow_started")

        trail = AuditLogger(tmp_path).get_audit_trail("wf-1")

        assert [r.event_type for r in trail] == ["workflow_started"]

    def test_get_events_filters_and_orders(self, instance):
        audit = AuditLogger()
        other = WorkflowInstance(id="wf-2", kind=WorkflowKind.ONBOARDING, subject_identity="ada@corp.com")
        audit.record_transition(instance, "workflow_started")
        audit.record_transition(other, "workflow_started")
        audit.record_transition(instance, "task_failed", success=False, error_message="denied")

        events = audit.get_events(workflow_id="wf-1")
        assert [e.event_type for e in events] == ["task_failed", "workflow_started"]

        assert len(audit.get_events(subject_identity="ada@corp.com")) == 1
        assert len(audit.get_events(event_type="workflow_started")) == 2
        assert len(audit.get_events(limit=1)) == 1

    def test_audit_trail_is_chronological(self, instance):
        audit = AuditLogger()
        for event in ("workflow_started", "task_started", "task_completed"):
            audit.record_transition(instance, event)

        assert [r.event_type for r in audit.get_audit_trail("wf-1")] == [
            "workflow_started", "task_started", "task_completed",
        ]

    def test_unparseable_lines_are_skipped(self, tmp_path, instance):
        audit = AuditLogger(tmp_path)
        audit.record_transition(instance, "workflow_started")
        log_file = next(tmp_path.glob("audit_*.jsonl"))
        with open(log_file, "a", encoding="utf-8") as f:
            f.write("{broken\n")

        assert len(AuditLogger(tmp_path).get_events()) == 1


class TestFileBackedAudit:
    """Audit storage when an audit directory is configured."""

    def test_nothing_held_in_memory(self, tmp_path, instance):
        audit = AuditLogger(tmp_path)
        for _ in range(50):
            audit.record_transition(instance, "task_started")

        assert audit.records == []
        assert len(audit.get_audit_trail("wf-1")) == 50

    def test_trail_reads_only_its_workflow_file(self, tmp_path, instance):
        audit = AuditLogger(tmp_path)
        other = WorkflowInstance(id="wf-2", kind=WorkflowKind.ONBOARDING, subject_identity="ada@corp.com")
        audit.record_transition(instance, "workflow_started")
        audit.record_transition(other, "workflow_started")
        audit.record_transition(instance, "workflow_finished")

        # Daily files are not consulted for a single trail
        for log_file in tmp_path.glob("audit_*.jsonl"):
            log_file.unlink()

        assert [r.event_type for r in audit.get_audit_trail("wf-1")] == [
            "workflow_started", "workflow_finished",
        ]
        assert [r.workflow_id for r in audit.get_events(workflow_id="wf-2")] == ["wf-2"]
        assert (tmp_path / "workflows" / "wf-1.jsonl").exists()

    def test_date_range_skips_other_days(self, tmp_path, instance, mocker):
        audit = AuditLogger(tmp_path)
        audit.record_transition(instance, "workflow_started")
        old_file = tmp_path / "audit_2001-01-01.jsonl"
        old_file.write_text("")
        read = mocker.spy(audit, "_read_file")

        events = audit.get_events(start_date=datetime.now(timezone.utc) - timedelta(days=1))

        assert [e.event_type for e in events] == ["workflow_started"]
        assert old_file not in [call.args[-1] for call in read.call_args_list]

    def test_unknown_workflow_has_empty_trail(self, tmp_path):
        assert AuditLogger(tmp_path).get_audit_trail("missing") == []
