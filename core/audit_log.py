"""
clmm-keeper Core: Audit Logger

Structured JSONL trail of every scheduler tick and every action result.
"""

import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Records:
    - One entry per tick (entities seen, actions dispatched, fetch errors)
    - One entry per resolved action (request summary, plan, outcome)

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        if audit_file:
            self.audit_file = Path(audit_file)
        else:
            self.audit_file = Path("logs/audit.jsonl")

        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def _write(self, entry: Dict[str, Any]) -> None:
        try:
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")

    def log_tick(
        self,
        mode: str,
        status: str,
        entities: int,
        dispatched: List[str],
        skipped_in_flight: List[str],
        fetch_errors: Dict[str, str],
        duration_ms: int,
        error: Optional[str] = None,
        evaluation_errors: Optional[Dict[str, str]] = None,
    ) -> None:
        """Log one scheduler tick."""
        entry = {
            "type": "tick",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "mode": mode,
            "status": status,
            "entities": entities,
            "dispatched": dispatched,
            "skipped_in_flight": skipped_in_flight,
            "fetch_errors": fetch_errors,
            "duration_ms": duration_ms,
        }
        if error:
            entry["error"] = error
        if evaluation_errors:
            entry["evaluation_errors"] = evaluation_errors
        self._write(entry)
        logger.debug(f"Audited tick: status={status} dispatched={len(dispatched)}")

    def log_action(self, request: Any, result: Any, mode: str) -> None:
        """Log a resolved action together with the request that produced it."""
        entry = {
            "type": "action",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "mode": mode,
            "idempotency_key": request.idempotency_key,
            "entity_id": request.entity_id,
            "kind": request.kind.value,
            "action": request.action.value,
            "steps": [step.value for step in request.steps],
            "plan": request.plan.to_dict() if request.plan else None,
            "result": result.to_dict(),
        }
        self._write(entry)

    def get_recent(self, n: int = 10, entry_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get the N most recent entries, most recent first.

        Args:
            n: Number of entries to retrieve
            entry_type: Optional filter ("tick" or "action")
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        entries = []
        for line in reversed(lines):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if entry_type and entry.get("type") != entry_type:
                continue
            entries.append(entry)
            if len(entries) >= n:
                break
        return entries
