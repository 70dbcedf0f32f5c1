"""Data models for pipeline-control sessions, attempts and runner results."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, Field


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
	return uuid4().hex[:12]


class ErrorKind(str, Enum):
	"""Failure taxonomy used to drive retry decisions."""

	BILLING_OR_QUOTA = "billing_or_quota"
	TRANSIENT_INFRA = "transient_infra"
	OUTPUT_VALIDATION = "output_validation"
	AUTHENTICATION = "authentication"
	PERMISSION = "permission"
	INVALID_REQUEST = "invalid_request"
	REQUEST_TOO_LARGE = "request_too_large"
	CONFIGURATION = "configuration"
	INVALID_TARGET = "invalid_target"
	EXECUTION_LIMIT = "execution_limit"


SessionStatus = Literal["running", "completed", "failed"]
AgentStatus = Literal["in-progress", "success", "failed"]


@dataclass
class Session:
	"""One end-to-end pipeline run against one target."""

	id: str = field(default_factory=_new_id)
	target: str = ""
	created_at: str = field(default_factory=_now_iso)
	status: SessionStatus = "running"
	completed_at: str | None = None

	def to_dict(self) -> dict[str, Any]:
		data: dict[str, Any] = {
			"id": self.id,
			"target": self.target,
			"status": self.status,
			"createdAt": self.created_at,
		}
		if self.completed_at is not None:
			data["completedAt"] = self.completed_at
		return data

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> Session:
		return cls(
			id=str(data["id"]),
			target=str(data.get("target", "")),
			created_at=str(data.get("createdAt", "")),
			status=data.get("status", "running"),
			completed_at=data.get("completedAt"),
		)


@dataclass
class AttemptRecord:
	"""One recorded attempt of an agent. Append-only."""

	agent_name: str
	attempt_number: int
	duration_ms: int = 0
	cost_usd: float = 0.0
	success: bool = False
	timestamp: str = field(default_factory=_now_iso)
	model: str | None = None
	error: str | None = None

	def to_dict(self) -> dict[str, Any]:
		data: dict[str, Any] = {
			"attemptNumber": self.attempt_number,
			"durationMs": self.duration_ms,
			"costUsd": self.cost_usd,
			"success": self.success,
			"timestamp": self.timestamp,
		}
		if self.model is not None:
			data["model"] = self.model
		if self.error is not None:
			data["error"] = self.error
		return data

	@classmethod
	def from_dict(cls, agent_name: str, data: dict[str, Any]) -> AttemptRecord:
		return cls(
			agent_name=agent_name,
			attempt_number=int(data["attemptNumber"]),
			duration_ms=int(data.get("durationMs", 0)),
			cost_usd=float(data.get("costUsd", 0.0)),
			success=bool(data.get("success", False)),
			timestamp=str(data.get("timestamp", "")),
			model=data.get("model"),
			error=data.get("error"),
		)


@dataclass
class AgentMetrics:
	"""Per-agent aggregate within a session, created lazily."""

	status: AgentStatus = "in-progress"
	attempts: list[AttemptRecord] = field(default_factory=list)
	final_duration_ms: int = 0
	total_cost_usd: float = 0.0
	model: str | None = None
	checkpoint: str | None = None

	@property
	def next_attempt_number(self) -> int:
		return len(self.attempts) + 1

	def to_dict(self) -> dict[str, Any]:
		data: dict[str, Any] = {
			"status": self.status,
			"attempts": [a.to_dict() for a in self.attempts],
			"finalDurationMs": self.final_duration_ms,
			"totalCostUsd": self.total_cost_usd,
		}
		if self.model is not None:
			data["model"] = self.model
		if self.checkpoint is not None:
			data["checkpoint"] = self.checkpoint
		return data

	@classmethod
	def from_dict(cls, agent_name: str, data: dict[str, Any]) -> AgentMetrics:
		return cls(
			status=data.get("status", "in-progress"),
			attempts=[AttemptRecord.from_dict(agent_name, a) for a in data.get("attempts", [])],
			final_duration_ms=int(data.get("finalDurationMs", 0)),
			total_cost_usd=float(data.get("totalCostUsd", 0.0)),
			model=data.get("model"),
			checkpoint=data.get("checkpoint"),
		)


@dataclass
class PhaseMetrics:
	"""Derived aggregate over successful agents of one phase."""

	duration_ms: int = 0
	duration_pct: float = 0.0
	cost_usd: float = 0.0
	agent_count: int = 0

	def to_dict(self) -> dict[str, Any]:
		return {
			"durationMs": self.duration_ms,
			"durationPct": self.duration_pct,
			"costUsd": self.cost_usd,
			"agentCount": self.agent_count,
		}


@dataclass
class ExploitationDecision:
	"""Whether the exploit agent of a sub-pipeline should run. Not persisted."""

	should_exploit: bool
	vulnerability_count: int
	work_type: str


@dataclass
class AgentRunRequest:
	"""Input handed to an AgentRunner."""

	task_description: str
	workspace_path: str
	context_text: str = ""
	env_overrides: dict[str, str] = field(default_factory=dict)


@dataclass
class AgentRunResult:
	"""Output returned by an AgentRunner."""

	success: bool
	result_text: str | None = None
	duration_ms: int = 0
	cost_usd: float = 0.0
	turns: int | None = None
	model: str | None = None
	error: str | None = None
	error_kind: ErrorKind | None = None


@dataclass
class AttemptOutcome:
	"""Terminal result of AttemptController.run_with_retry."""

	agent_name: str
	success: bool
	attempts: int = 0
	duration_ms: int = 0
	cost_usd: float = 0.0
	turns: int = 0
	model: str | None = None
	checkpoint: str | None = None
	result_text: str | None = None
	error: str | None = None
	error_kind: ErrorKind | None = None


@dataclass
class RunContext:
	"""Per-session accumulator for the completion summary.

	One instance is threaded through the orchestrator and its attempt
	controllers, so several sessions can run in one process independently.
	"""

	session_id: str
	started_monotonic: float = field(default_factory=time.monotonic)
	outcomes: dict[str, AttemptOutcome] = field(default_factory=dict)

	def record(self, outcome: AttemptOutcome) -> None:
		self.outcomes[outcome.agent_name] = outcome

	@property
	def elapsed_ms(self) -> int:
		return int((time.monotonic() - self.started_monotonic) * 1000)

	@property
	def completed_agents(self) -> list[str]:
		return [name for name, o in self.outcomes.items() if o.success]

	def summary(self) -> dict[str, Any]:
		return {
			"totalCostUsd": round(sum(o.cost_usd for o in self.outcomes.values()), 6),
			"totalDurationMs": self.elapsed_ms,
			"totalTurns": sum(o.turns for o in self.outcomes.values()),
			"agentCount": len(self.completed_agents),
			"agents": {
				name: {
					"success": o.success,
					"attempts": o.attempts,
					"durationMs": o.duration_ms,
					"costUsd": o.cost_usd,
				}
				for name, o in self.outcomes.items()
			},
		}


@dataclass
class SubPipelineResult:
	"""Outcome of one vuln -> gate -> exploit sub-pipeline."""

	vuln_type: str
	vuln_outcome: AttemptOutcome | None = None
	decision: ExploitationDecision | None = None
	exploit_outcome: AttemptOutcome | None = None
	error: str | None = None

	@property
	def succeeded(self) -> bool:
		return self.error is None


class RunnerResultSchema(BaseModel, extra="ignore"):
	"""Pydantic schema for the final `result` event of the runner's stream-json output."""

	type: Literal["result"]
	subtype: str = ""
	is_error: bool = False
	result: str | None = None
	total_cost_usd: float = 0.0
	num_turns: int = 0
	duration_ms: int = 0


class QueueSchema(BaseModel, extra="ignore"):
	"""Pydantic schema for an exploitation queue artifact."""

	items: list[Any] = Field(validation_alias=AliasChoices("items", "vulnerabilities"))
