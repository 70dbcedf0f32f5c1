"""Top-level pipeline state machine.

pre-recon -> recon -> five concurrent vuln -> gate -> exploit sub-pipelines
-> reporting. A failure in a sequential phase aborts the session; a failed
sub-pipeline is recorded and its siblings carry on.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pipeline_control import queue_gate, reporting
from pipeline_control.attempt import AttemptController, Backoff
from pipeline_control.audit import AuditSink, FileAuditSink, NullAuditSink
from pipeline_control.checkpoint import WorkspaceCheckpointer
from pipeline_control.config import PipelineConfig
from pipeline_control.constants import VULN_TYPES, exploit_agent, vuln_agent
from pipeline_control.errors import InvalidTransitionError, QueueValidationError
from pipeline_control.metrics import format_duration
from pipeline_control.models import (
	AgentRunRequest,
	AttemptOutcome,
	ErrorKind,
	ExploitationDecision,
	RunContext,
	Session,
	SubPipelineResult,
)
from pipeline_control.runner import AgentRunner, ClaudeCliRunner
from pipeline_control.session_store import SessionMetricsStore
from pipeline_control.tracing import PipelineTracer
from pipeline_control.validators import DeliverableValidator, OutputValidator

logger = logging.getLogger(__name__)

PROGRESS_FILENAME = "progress.json"
PARALLEL_PHASE = "vulnerability-exploitation"


@dataclass
class PipelineState:
	"""Mutable workflow state behind the progress projection."""

	status: str = "running"
	current_phase: str | None = None
	current_agent: str | None = None
	completed_agents: list[str] = field(default_factory=list)
	failed_agent: str | None = None
	error: str | None = None
	start_time: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
	sub_pipelines: dict[str, SubPipelineResult] = field(default_factory=dict)
	failed_pipelines: dict[str, str] = field(default_factory=dict)
	summary: dict[str, Any] | None = None


class PromptLoader:
	"""Loads `<prompts_dir>/<agent>.md`, substituting {target} and {workspace}."""

	def __init__(self, prompts_dir: Path | None, target: str, workspace: str) -> None:
		self.prompts_dir = prompts_dir
		self.target = target
		self.workspace = workspace

	def load(self, agent_name: str) -> str:
		if self.prompts_dir is not None:
			path = self.prompts_dir / f"{agent_name}.md"
			if path.is_file():
				text = path.read_text(encoding="utf-8")
				return text.replace("{target}", self.target).replace("{workspace}", self.workspace)
			logger.warning("No prompt file for %s in %s, using default", agent_name, self.prompts_dir)
		return f"Run the {agent_name} agent against {self.target}. Workspace: {self.workspace}"


class PipelineOrchestrator:
	"""Sequences phases, fans out sub-pipelines and tracks progress for one session."""

	def __init__(
		self,
		config: PipelineConfig,
		store: SessionMetricsStore,
		runner: AgentRunner,
		checkpointer: WorkspaceCheckpointer | None = None,
		validator: OutputValidator | None = None,
		audit: AuditSink | None = None,
		tracer: PipelineTracer | None = None,
		prompts: PromptLoader | None = None,
		backoff: Backoff | None = None,
	) -> None:
		self.config = config
		self.store = store
		self.session = store.session
		self.workspace = config.target.resolved_workspace
		self.audit: AuditSink = audit or NullAuditSink()
		self.tracer = tracer or PipelineTracer(config.tracing)
		self.context = RunContext(session_id=self.session.id)
		self.state = PipelineState()
		self.prompts = prompts or PromptLoader(
			config.target.resolved_prompts_dir, config.target.url, str(self.workspace),
		)
		self.backoff = backoff
		self.controller = AttemptController(
			checkpointer=checkpointer or WorkspaceCheckpointer.for_workspace(self.workspace, config.checkpoint),
			runner=runner,
			validator=validator or DeliverableValidator(),
			store=store,
			retry=config.active_retry,
			audit=self.audit,
			context=self.context,
			tracer=self.tracer,
			timeout_seconds=config.active_runner_timeout,
			heartbeat_interval=config.runner.heartbeat_interval,
		)
		self._semaphore = asyncio.Semaphore(max(config.pipeline.max_concurrent_pipelines, 1))
		self._exploitation_started = False
		self.progress_path = store.session_dir / PROGRESS_FILENAME

	@classmethod
	async def create(
		cls,
		config: PipelineConfig,
		runner: AgentRunner | None = None,
		session_id: str | None = None,
	) -> PipelineOrchestrator:
		"""Open (or resume) the session document and wire file-backed collaborators."""
		session = Session(target=config.target.url)
		if session_id:
			session.id = session_id
		audit_root = config.audit.resolved_root
		store = await SessionMetricsStore.open(session, audit_root)
		return cls(
			config=config,
			store=store,
			runner=runner or ClaudeCliRunner(config.runner, config),
			audit=FileAuditSink(audit_root, store.session.id),
		)

	def progress(self) -> dict[str, Any]:
		"""Point-in-time, read-only projection of workflow progress."""
		data: dict[str, Any] = {
			"sessionId": self.session.id,
			"status": self.state.status,
			"currentPhase": self.state.current_phase,
			"currentAgent": self.state.current_agent,
			"completedAgents": list(self.state.completed_agents),
			"elapsedMs": self.context.elapsed_ms,
			"startTime": self.state.start_time,
		}
		if self.state.failed_agent is not None:
			data["failedAgent"] = self.state.failed_agent
		if self.state.error is not None:
			data["error"] = self.state.error
		if self.state.failed_pipelines:
			data["failedPipelines"] = dict(self.state.failed_pipelines)
		if self.state.summary is not None:
			data["summary"] = self.state.summary
		return data

	async def run(self) -> PipelineState:
		if self.store.session.status != "running":
			raise InvalidTransitionError(
				f"Session {self.session.id} is already {self.store.session.status}; start a new session to re-run it",
				kind=ErrorKind.INVALID_REQUEST,
			)
		logger.info("Starting session %s against %s", self.session.id, self.session.target)
		with self.tracer.start_session_span(self.session.id, self.session.target) as span:
			try:
				await self._run_sequential_phase("pre-recon", ["pre-recon"])
				await self._run_sequential_phase("recon", ["recon"])
				await self._run_parallel_phase()
				await self._run_reporting_phase()
			except Exception as exc:
				span.record_exception(exc)
				await self._fail(exc)
				raise
			await self._complete()
		return self.state

	async def _run_sequential_phase(self, phase: str, agents: list[str]) -> None:
		self._enter_phase(phase)
		with self.tracer.start_phase_span(phase):
			for agent_name in agents:
				await self._run_agent(agent_name)
		self.audit.phase_completed(phase)

	async def _run_parallel_phase(self) -> None:
		self._enter_phase(PARALLEL_PHASE, audit_phase="vulnerability-analysis")
		with self.tracer.start_phase_span(PARALLEL_PHASE):
			results = await asyncio.gather(
				*(self._run_sub_pipeline(t) for t in VULN_TYPES),
				return_exceptions=True,
			)
		for vuln_type, result in zip(VULN_TYPES, results):
			if isinstance(result, SubPipelineResult):
				self.state.sub_pipelines[vuln_type] = result
				continue
			message = str(result) or type(result).__name__
			self.state.failed_pipelines[vuln_type] = message
			self.state.sub_pipelines[vuln_type] = SubPipelineResult(vuln_type=vuln_type, error=message)
			logger.error("%s sub-pipeline failed: %s", vuln_type, message)
		self.audit.phase_completed("vulnerability-analysis")
		if self._exploitation_started:
			self.audit.phase_completed("exploitation")
		succeeded = len(VULN_TYPES) - len(self.state.failed_pipelines)
		logger.info("Sub-pipelines finished: %d succeeded, %d failed", succeeded, len(self.state.failed_pipelines))
		self._persist_progress()

	async def _run_sub_pipeline(self, vuln_type: str) -> SubPipelineResult:
		async with self._semaphore:
			result = SubPipelineResult(vuln_type=vuln_type)
			result.vuln_outcome = await self._run_agent(vuln_agent(vuln_type))

			decision = queue_gate.decide(vuln_type, self.workspace)
			if isinstance(decision, QueueValidationError):
				if decision.retryable:
					raise decision
				logger.warning("Skipping %s exploitation: %s", vuln_type, decision)
				decision = ExploitationDecision(should_exploit=False, vulnerability_count=0, work_type=vuln_type)
			result.decision = decision

			if decision.should_exploit:
				if not self._exploitation_started:
					self._exploitation_started = True
					self.audit.phase_started("exploitation")
				result.exploit_outcome = await self._run_agent(exploit_agent(vuln_type))
			else:
				logger.info("No %s vulnerabilities queued, skipping exploitation", vuln_type)
			return result

	async def _run_reporting_phase(self) -> None:
		self._enter_phase("reporting")
		with self.tracer.start_phase_span("reporting"):
			try:
				reporting.assemble_final_report(self.workspace)
			except (OSError, ValueError) as exc:
				logger.warning("Report assembly failed: %s", exc)
			await self._run_agent("report")
			try:
				reporting.inject_model_metadata(self.workspace, self.store.snapshot())
			except (OSError, ValueError) as exc:
				logger.warning("Model metadata injection failed: %s", exc)
		self.audit.phase_completed("reporting")

	async def _run_agent(self, agent_name: str) -> AttemptOutcome | None:
		existing = self.store.agent(agent_name)
		if existing is not None and existing.status == "success":
			logger.info("%s already succeeded in this session, skipping", agent_name)
			self._mark_completed(agent_name)
			return None

		self.state.current_agent = agent_name
		self._persist_progress()
		request = AgentRunRequest(
			task_description=self.prompts.load(agent_name),
			workspace_path=str(self.workspace),
		)
		outcome = await self.controller.run_with_retry(agent_name, request, backoff=self.backoff)
		self._mark_completed(agent_name)
		return outcome

	def _mark_completed(self, agent_name: str) -> None:
		if agent_name not in self.state.completed_agents:
			self.state.completed_agents.append(agent_name)
		self._persist_progress()

	def _enter_phase(self, phase: str, audit_phase: str | None = None) -> None:
		self.state.current_phase = phase
		self.state.current_agent = None
		self.audit.phase_started(audit_phase or phase)
		logger.info("Phase %s", phase)
		self._persist_progress()

	async def _complete(self) -> None:
		self.state.status = "completed"
		self.state.current_agent = None
		self.state.summary = self.context.summary()
		await self.store.update_session_status("completed")
		self._persist_progress()
		self.audit.workflow_completed("completed", self.state.summary)
		logger.info(
			"Session %s completed in %s: %d agent(s), $%.4f, %d turn(s)",
			self.session.id,
			format_duration(self.state.summary["totalDurationMs"]),
			self.state.summary["agentCount"],
			self.state.summary["totalCostUsd"],
			self.state.summary["totalTurns"],
		)

	async def _fail(self, exc: BaseException) -> None:
		self.state.status = "failed"
		self.state.failed_agent = self.state.current_agent
		self.state.error = str(exc)
		self.state.summary = self.context.summary()
		if self.store.session.status == "running":
			await self.store.update_session_status("failed")
		self._persist_progress()
		self.audit.workflow_completed("failed", {"error": self.state.error, **self.state.summary})
		logger.error("Session %s failed at %s: %s", self.session.id, self.state.failed_agent, exc)

	def _persist_progress(self) -> None:
		"""Atomically write the progress projection next to session.json."""
		tmp = self.progress_path.with_name(f".{PROGRESS_FILENAME}.{os.getpid()}.tmp")
		try:
			self.progress_path.parent.mkdir(parents=True, exist_ok=True)
			tmp.write_text(json.dumps(self.progress(), indent=2, default=str), encoding="utf-8")
			os.replace(tmp, self.progress_path)
		except OSError as exc:
			tmp.unlink(missing_ok=True)
			logger.warning("Could not persist progress to %s: %s", self.progress_path, exc)


def load_progress(audit_root: str | Path, session_id: str) -> dict[str, Any] | None:
	"""Read the last persisted progress projection of a session."""
	path = Path(audit_root) / session_id / PROGRESS_FILENAME
	if not path.exists():
		return None
	try:
		return json.loads(path.read_text(encoding="utf-8"))
	except (OSError, ValueError) as exc:
		logger.warning("Could not read %s: %s", path, exc)
		return None
