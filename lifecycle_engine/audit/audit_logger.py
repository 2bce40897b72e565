"""
Audit Logging Module.

Records every workflow and task transition as an append-only stream of
AuditRecords, kept in memory or written to daily and per-workflow JSONL files.
"""

import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..models import AuditRecord, TaskType, WorkflowInstance

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Append-only logger for lifecycle audit events.

    Records are never rewritten. When ``audit_dir`` is set each record is
    appended to ``audit_YYYY-MM-DD.jsonl`` and to its workflow's own
    ``workflows/<workflow_id>.jsonl`` trail; nothing is kept in memory.
    Without ``audit_dir`` records are held in memory only.
    """

    def __init__(self, audit_dir: Optional[Union[str, Path]] = None):
        """
        Initialize the audit logger.

        Args:
            audit_dir: Directory to store audit logs. If None, records are
                       kept in memory only.
        """
        self.audit_dir = Path(audit_dir) if audit_dir else None
        self.records: List[AuditRecord] = []
        self._lock = threading.Lock()

        if self.audit_dir:
            self.trail_dir.mkdir(parents=True, exist_ok=True)

    @property
    def trail_dir(self) -> Optional[Path]:
        return self.audit_dir / "workflows" if self.audit_dir else None

    def log_event(self, record: AuditRecord) -> str:
        """
        Log an audit event.

        Args:
            record: The audit record to log

        Returns:
            The record ID
        """
        with self._lock:
            if self.audit_dir:
                date_str = record.timestamp.astimezone(timezone.utc).strftime("%Y-%m-%d")
                line = json.dumps(record.model_dump(mode="json")) + "\n"
                for log_file in (self.audit_dir / f"audit_{date_str}.jsonl",
                                 self.trail_dir / f"{record.workflow_id}.jsonl"):
                    try:
                        with open(log_file, "a", encoding="utf-8") as f:
                            f.write(line)
                    except OSError as e:
                        logger.error(f"Failed to write audit event {record.id} to {log_file}: {e}")
                        raise
            else:
                self.records.append(record)

        logger.debug(
            f"Audit {record.event_type} for workflow {record.workflow_id}"
            f"{' task ' + record.task_type.value if record.task_type else ''}"
        )
        return record.id

    def record_transition(
        self,
        instance: WorkflowInstance,
        event_type: str,
        task_type: Optional[TaskType] = None,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
        attempt: int = 0,
        success: bool = True,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Build an AuditRecord for an instance transition and log it."""
        record = AuditRecord(
            id=f"audit_{uuid.uuid4().hex[:12]}",
            workflow_id=instance.id,
            kind=instance.kind,
            subject_identity=instance.subject_identity,
            event_type=event_type,
            task_type=task_type,
            from_state=from_state,
            to_state=to_state,
            attempt=attempt,
            success=success,
            error_message=error_message,
            metadata=metadata or {},
        )
        return self.log_event(record)

    def get_events(
        self,
        workflow_id: Optional[str] = None,
        subject_identity: Optional[str] = None,
        event_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        """
        Retrieve audit events with filtering, most recent first.

        Args:
            workflow_id: Filter by workflow instance ID
            subject_identity: Filter by directory identity
            event_type: Filter by transition type
            start_date: Filter by start date
            end_date: Filter by end date
            limit: Maximum number of records to return

        Returns:
            List of matching AuditRecords
        """
        if workflow_id:
            records = self.get_audit_trail(workflow_id)
        else:
            records = self._all_records(start_date, end_date)

        results = []

        for record in reversed(records):
            if len(results) >= limit:
                break
            if subject_identity and record.subject_identity != subject_identity:
                continue
            if event_type and record.event_type != event_type:
                continue
            if start_date and record.timestamp < start_date:
                continue
            if end_date and record.timestamp > end_date:
                continue
            results.append(record)

        return results

    def get_audit_trail(self, workflow_id: str) -> List[AuditRecord]:
        """Every record of one workflow instance in the order it was written."""
        if not self.audit_dir:
            with self._lock:
                return [r for r in self.records if r.workflow_id == workflow_id]
        return self._read_file(self.trail_dir / f"{workflow_id}.jsonl")

    def _all_records(self, start_date: Optional[datetime] = None,
                     end_date: Optional[datetime] = None) -> List[AuditRecord]:
        """Records in write order; daily files outside the date range are not read."""
        if not self.audit_dir:
            with self._lock:
                return list(self.records)

        first_day = start_date.astimezone(timezone.utc).strftime("%Y-%m-%d") if start_date else None
        last_day = end_date.astimezone(timezone.utc).strftime("%Y-%m-%d") if end_date else None

        records = []
        for log_file in sorted(self.audit_dir.glob("audit_*.jsonl")):
            day = log_file.stem[len("audit_"):]
            if (first_day and day < first_day) or (last_day and day > last_day):
                continue
            records.extend(self._read_file(log_file))
        return records

    def _read_file(self, log_file: Path) -> List[AuditRecord]:
        if not log_file.exists():
            return []

        records = []
        try:
            with open(log_file, encoding="utf-8") as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        records.append(AuditRecord.model_validate(json.loads(line)))
                    except ValueError as e:
                        logger.warning(f"Failed to parse audit record in {log_file}: {e}")
        except OSError as e:
            logger.error(f"Failed to read log file {log_file}: {e}")
        return records
