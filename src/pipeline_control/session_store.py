"""Crash-safe per-session metrics document.

One JSON document per session lives at `<audit_root>/<session_id>/session.json`.
Every mutation runs reload -> mutate -> recompute -> atomic write while holding
both a per-session asyncio lock (concurrent sub-pipelines in one process) and
an exclusive flock on a sibling lock file (separate processes sharing the
filesystem), so near-simultaneous attempt completions never lose each other's
writes.
"""

from __future__ import annotations

import asyncio
import copy
import fcntl
import json
import logging
import os
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, AsyncIterator, Callable

from pipeline_control.constants import AGENT_PHASE_MAP, PHASES
from pipeline_control.errors import InvalidTransitionError, SessionStoreError
from pipeline_control.models import (
	AgentMetrics,
	AttemptRecord,
	ErrorKind,
	PhaseMetrics,
	Session,
	SessionStatus,
)

logger = logging.getLogger(__name__)

SESSION_FILENAME = "session.json"
LOCK_FILENAME = "session.lock"

_session_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]] = (
	weakref.WeakKeyDictionary()
)


def _session_lock(session_id: str) -> asyncio.Lock:
	loop = asyncio.get_running_loop()
	locks = _session_locks.setdefault(loop, {})
	lock = locks.get(session_id)
	if lock is None:
		lock = asyncio.Lock()
		locks[session_id] = lock
	return lock


def _percentage(part: int, total: int) -> float:
	if total == 0:
		return 0.0
	return round(part / total * 100, 2)


@dataclass
class SessionDocument:
	"""In-memory form of session.json."""

	session: Session
	agents: dict[str, AgentMetrics] = field(default_factory=dict)
	phases: dict[str, PhaseMetrics] = field(default_factory=dict)
	total_duration_ms: int = 0
	total_cost_usd: float = 0.0

	def recompute(self) -> None:
		"""Rebuild totals and phase aggregates from successful agents only."""
		successful = {name: a for name, a in self.agents.items() if a.status == "success"}
		self.total_duration_ms = sum(a.final_duration_ms for a in successful.values())
		self.total_cost_usd = round(sum(a.total_cost_usd for a in successful.values()), 6)

		phases: dict[str, PhaseMetrics] = {}
		for phase in PHASES:
			members = [a for name, a in successful.items() if AGENT_PHASE_MAP.get(name) == phase]
			if not members:
				continue
			duration = sum(a.final_duration_ms for a in members)
			phases[phase] = PhaseMetrics(
				duration_ms=duration,
				duration_pct=_percentage(duration, self.total_duration_ms),
				cost_usd=round(sum(a.total_cost_usd for a in members), 6),
				agent_count=len(members),
			)
		self.phases = phases

	def to_dict(self) -> dict[str, Any]:
		return {
			"session": self.session.to_dict(),
			"metrics": {
				"totalDurationMs": self.total_duration_ms,
				"totalCostUsd": self.total_cost_usd,
				"phases": {name: p.to_dict() for name, p in self.phases.items()},
				"agents": {name: a.to_dict() for name, a in self.agents.items()},
			},
		}

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> SessionDocument:
		metrics = data.get("metrics", {})
		doc = cls(
			session=Session.from_dict(data["session"]),
			agents={
				name: AgentMetrics.from_dict(name, a)
				for name, a in metrics.get("agents", {}).items()
			},
		)
		doc.recompute()
		return doc


class SessionMetricsStore:
	"""Shared-read / exclusive-write metrics store for one session."""

	def __init__(self, session: Session, audit_root: str | Path) -> None:
		self.session_id = session.id
		self.session_dir = Path(audit_root) / session.id
		self.path = self.session_dir / SESSION_FILENAME
		self.lock_path = self.session_dir / LOCK_FILENAME
		self._document = SessionDocument(session=session)

	@classmethod
	async def open(cls, session: Session, audit_root: str | Path) -> SessionMetricsStore:
		"""Load the existing document for `session`, or create and persist a fresh one."""
		store = cls(session, audit_root)
		store.session_dir.mkdir(parents=True, exist_ok=True)
		async with store._exclusive():
			existing = store._read()
			if existing is not None:
				store._document = existing
				logger.info("Resumed session document %s", store.path)
			else:
				store._write(store._document)
				logger.info("Created session document %s", store.path)
		return store

	@property
	def session(self) -> Session:
		return self._document.session

	def agent(self, agent_name: str) -> AgentMetrics | None:
		return self._document.agents.get(agent_name)

	async def start_attempt(self, agent_name: str) -> int:
		"""Mark `agent_name` in progress and return the number of its next attempt."""
		number = 0

		def mutate(doc: SessionDocument) -> None:
			nonlocal number
			agent = doc.agents.setdefault(agent_name, AgentMetrics())
			if agent.status == "success":
				raise SessionStoreError(
					f"Agent {agent_name} already succeeded in session {self.session_id}",
					kind=ErrorKind.INVALID_REQUEST,
				)
			agent.status = "in-progress"
			number = agent.next_attempt_number

		await self._mutate(mutate)
		return number

	async def end_attempt(
		self,
		agent_name: str,
		record: AttemptRecord,
		final: bool = False,
		checkpoint: str | None = None,
	) -> AgentMetrics:
		"""Append one attempt record and recompute every aggregate.

		Args:
			agent_name: Agent the attempt belongs to.
			record: The finished attempt. Its number must be the next contiguous one.
			final: True when no further attempt will follow a failure.
			checkpoint: Commit hash recorded on success.
		"""
		result: AgentMetrics | None = None

		def mutate(doc: SessionDocument) -> None:
			nonlocal result
			agent = doc.agents.setdefault(agent_name, AgentMetrics())
			expected = agent.next_attempt_number
			if record.attempt_number != expected:
				raise SessionStoreError(
					f"Attempt {record.attempt_number} of {agent_name} out of order (expected {expected})",
					kind=ErrorKind.INVALID_REQUEST,
				)
			if agent.status == "success":
				raise SessionStoreError(
					f"Agent {agent_name} already has a successful attempt",
					kind=ErrorKind.INVALID_REQUEST,
				)
			agent.attempts.append(record)
			agent.total_cost_usd = round(sum(a.cost_usd for a in agent.attempts), 6)
			if record.success:
				agent.status = "success"
				agent.final_duration_ms = record.duration_ms
				if record.model:
					agent.model = record.model
				if checkpoint:
					agent.checkpoint = checkpoint
			elif final:
				agent.status = "failed"
			result = copy.deepcopy(agent)

		await self._mutate(mutate)
		assert result is not None
		return result

	async def update_session_status(self, status: SessionStatus) -> None:
		"""Move the session from running to completed or failed."""

		def mutate(doc: SessionDocument) -> None:
			current = doc.session.status
			if current != "running" or status == "running":
				raise InvalidTransitionError(
					f"Invalid session transition {current} -> {status}",
					kind=ErrorKind.INVALID_REQUEST,
				)
			doc.session.status = status
			doc.session.completed_at = datetime.now(timezone.utc).isoformat()

		await self._mutate(mutate)
		logger.info("Session %s marked %s", self.session_id, status)

	async def reload(self) -> dict[str, Any]:
		"""Re-read the document from disk and return a snapshot of it."""
		async with self._exclusive():
			existing = self._read()
			if existing is not None:
				self._document = existing
		return self.snapshot()

	def snapshot(self) -> dict[str, Any]:
		"""Point-in-time copy of the last loaded or written document."""
		return copy.deepcopy(self._document.to_dict())

	async def _mutate(self, fn: Callable[[SessionDocument], None]) -> None:
		async with self._exclusive():
			doc = self._read() or copy.deepcopy(self._document)
			fn(doc)
			doc.recompute()
			self._write(doc)
			self._document = doc

	@asynccontextmanager
	async def _exclusive(self) -> AsyncIterator[None]:
		async with _session_lock(self.session_id):
			self.session_dir.mkdir(parents=True, exist_ok=True)
			handle = self.lock_path.open("a")
			try:
				await asyncio.to_thread(fcntl.flock, handle.fileno(), fcntl.LOCK_EX)
				try:
					yield
				finally:
					fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
			finally:
				handle.close()

	def _read(self) -> SessionDocument | None:
		if not self.path.exists():
			return None
		try:
			data = json.loads(self.path.read_text(encoding="utf-8"))
			return SessionDocument.from_dict(data)
		except (OSError, ValueError, KeyError, TypeError) as exc:
			raise SessionStoreError(
				f"Failed to read session document {self.path}: {exc}",
				kind=ErrorKind.CONFIGURATION,
				retryable=False,
			) from exc

	def _write(self, doc: SessionDocument) -> None:
		"""Write to a temp file and rename it over the target."""
		tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
		handle: IO[str] | None = None
		try:
			handle = tmp.open("w", encoding="utf-8")
			json.dump(doc.to_dict(), handle, indent=2)
			handle.write("\n")
			handle.flush()
			os.fsync(handle.fileno())
			handle.close()
			handle = None
			os.replace(tmp, self.path)
		except OSError as exc:
			if handle is not None:
				handle.close()
			tmp.unlink(missing_ok=True)
			raise SessionStoreError(
				f"Failed to write session document {self.path}: {exc}",
				kind=ErrorKind.TRANSIENT_INFRA,
			) from exc


def load_session_document(audit_root: str | Path, session_id: str) -> dict[str, Any] | None:
	"""Read a session document without taking locks. For read-only consumers."""
	path = Path(audit_root) / session_id / SESSION_FILENAME
	if not path.exists():
		return None
	try:
		return json.loads(path.read_text(encoding="utf-8"))
	except (OSError, ValueError) as exc:
		logger.warning("Could not read %s: %s", path, exc)
		return None
