"""Audit trail: per-attempt NDJSON event logs and a human-readable workflow log.

Collaborators receive one AuditSink at construction. NullAuditSink is the
variant used when no audit trail is wanted, so callers never check for None.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Protocol

from pipeline_control.models import AttemptRecord
from pipeline_control.tracing import get_current_trace_context

logger = logging.getLogger(__name__)


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


class AuditSink(Protocol):
	def agent_started(self, agent_name: str, attempt: int, prompt: str | None = None) -> None: ...

	def agent_event(self, agent_name: str, attempt: int, event_type: str, data: dict[str, Any]) -> None: ...

	def agent_finished(self, agent_name: str, record: AttemptRecord) -> None: ...

	def phase_started(self, phase: str) -> None: ...

	def phase_completed(self, phase: str) -> None: ...

	def workflow_completed(self, status: str, summary: dict[str, Any]) -> None: ...


class NullAuditSink:
	"""AuditSink that records nothing."""

	def agent_started(self, agent_name: str, attempt: int, prompt: str | None = None) -> None:
		pass

	def agent_event(self, agent_name: str, attempt: int, event_type: str, data: dict[str, Any]) -> None:
		pass

	def agent_finished(self, agent_name: str, record: AttemptRecord) -> None:
		pass

	def phase_started(self, phase: str) -> None:
		pass

	def phase_completed(self, phase: str) -> None:
		pass

	def workflow_completed(self, status: str, summary: dict[str, Any]) -> None:
		pass


class AttemptLog:
	"""Append-only NDJSON stream for one in-flight attempt.

	Each line is `{"type", "timestamp", "data"}` and is flushed and fsynced
	before `write` returns.
	"""

	def __init__(self, path: Path) -> None:
		self.path = path
		self._file: IO[str] | None = None

	def open(self) -> None:
		self.path.parent.mkdir(parents=True, exist_ok=True)
		self._file = self.path.open("a", encoding="utf-8")

	def close(self) -> None:
		if self._file is not None:
			self._file.close()
			self._file = None

	@property
	def is_open(self) -> bool:
		return self._file is not None

	def write(self, event_type: str, data: dict[str, Any]) -> None:
		if self._file is None:
			return
		trace_id, span_id = get_current_trace_context()
		if trace_id:
			data = {**data, "trace_id": trace_id, "span_id": span_id}
		record = {"type": event_type, "timestamp": _now_iso(), "data": data}
		self._file.write(json.dumps(record, separators=(",", ":"), default=str) + "\n")
		self._file.flush()
		os.fsync(self._file.fileno())


class WorkflowLog:
	"""Human-readable, append-only log of one session's workflow."""

	def __init__(self, path: Path) -> None:
		self.path = path

	def write(self, message: str) -> None:
		self.path.parent.mkdir(parents=True, exist_ok=True)
		stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
		with self.path.open("a", encoding="utf-8") as f:
			f.write(f"[{stamp}] {message}\n")
			f.flush()


class FileAuditSink:
	"""Writes the audit trail of one session under `<audit_root>/<session_id>/`."""

	def __init__(self, audit_root: str | Path, session_id: str) -> None:
		self.session_dir = Path(audit_root) / session_id
		self.agents_dir = self.session_dir / "agents"
		self.prompts_dir = self.session_dir / "prompts"
		self.workflow = WorkflowLog(self.session_dir / "workflow.log")
		self._open_logs: dict[tuple[str, int], AttemptLog] = {}

	def _attempt_log_path(self, agent_name: str, attempt: int) -> Path:
		stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
		return self.agents_dir / f"{stamp}_{agent_name}_attempt-{attempt}.log"

	def agent_started(self, agent_name: str, attempt: int, prompt: str | None = None) -> None:
		if attempt == 1 and prompt:
			self.prompts_dir.mkdir(parents=True, exist_ok=True)
			(self.prompts_dir / f"{agent_name}.md").write_text(prompt, encoding="utf-8")
		log = AttemptLog(self._attempt_log_path(agent_name, attempt))
		log.open()
		self._open_logs[(agent_name, attempt)] = log
		log.write("agent_start", {"agent": agent_name, "attempt": attempt})
		self.workflow.write(f"Agent {agent_name} started (attempt {attempt})")

	def agent_event(self, agent_name: str, attempt: int, event_type: str, data: dict[str, Any]) -> None:
		log = self._open_logs.get((agent_name, attempt))
		if log is None:
			logger.debug("No open attempt log for %s attempt %d, dropping %s", agent_name, attempt, event_type)
			return
		log.write(event_type, data)

	def agent_finished(self, agent_name: str, record: AttemptRecord) -> None:
		log = self._open_logs.pop((agent_name, record.attempt_number), None)
		if log is not None:
			log.write("agent_end", record.to_dict())
			log.close()
		outcome = "succeeded" if record.success else f"failed: {record.error or 'unknown error'}"
		self.workflow.write(
			f"Agent {agent_name} attempt {record.attempt_number} {outcome} "
			f"({record.duration_ms}ms, ${record.cost_usd:.4f})"
		)

	def phase_started(self, phase: str) -> None:
		self.workflow.write(f"Phase {phase} started")

	def phase_completed(self, phase: str) -> None:
		self.workflow.write(f"Phase {phase} completed")

	def workflow_completed(self, status: str, summary: dict[str, Any]) -> None:
		self.workflow.write(f"Workflow {status}: {json.dumps(summary, default=str)}")
		for log in self._open_logs.values():
			log.close()
		self._open_logs.clear()
