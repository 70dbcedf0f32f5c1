"""Checkpointed, classification-driven retry loop around one agent.

Per attempt: checkpoint (rolling back first on retries) -> run -> validate ->
commit, or roll back and either retry after a backoff or give up. Every
attempt is recorded in the session store exactly once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from pipeline_control.audit import AuditSink, NullAuditSink
from pipeline_control.checkpoint import WorkspaceCheckpointer
from pipeline_control.config import RetryConfig
from pipeline_control.constants import DEFAULT_LIMITS
from pipeline_control.errors import (
	RETRYABLE_KINDS,
	AttemptsExhaustedError,
	BackoffPolicy,
	Classification,
	FatalAgentError,
	PipelineError,
	classify,
	looks_like_billing_notice,
	truncate_error,
)
from pipeline_control.heartbeat import AttemptHeartbeat
from pipeline_control.metrics import Timer
from pipeline_control.models import (
	AgentRunRequest,
	AgentRunResult,
	AttemptOutcome,
	AttemptRecord,
	ErrorKind,
	RunContext,
)
from pipeline_control.runner import AgentRunner, build_prompt
from pipeline_control.session_store import SessionMetricsStore
from pipeline_control.tracing import PipelineTracer
from pipeline_control.validators import OutputValidator

logger = logging.getLogger(__name__)

Backoff = Callable[[Classification, int], float]

# A "successful" run this short and free is usually a quota notice, not work.
_BILLING_GUARD_MAX_TURNS = 2


class AttemptController:
	"""Runs one agent with bounded retries against a shared workspace."""

	def __init__(
		self,
		checkpointer: WorkspaceCheckpointer,
		runner: AgentRunner,
		validator: OutputValidator,
		store: SessionMetricsStore,
		retry: RetryConfig | None = None,
		audit: AuditSink | None = None,
		context: RunContext | None = None,
		tracer: PipelineTracer | None = None,
		timeout_seconds: float = DEFAULT_LIMITS["runner_timeout"],
		heartbeat_interval: float = DEFAULT_LIMITS["heartbeat_interval"],
	) -> None:
		self.checkpointer = checkpointer
		self.runner = runner
		self.validator = validator
		self.store = store
		self.retry = retry or RetryConfig()
		self.audit: AuditSink = audit or NullAuditSink()
		self.context = context
		self.tracer = tracer or PipelineTracer()
		self.timeout_seconds = timeout_seconds
		self.heartbeat_interval = heartbeat_interval

	async def run_with_retry(
		self,
		agent_name: str,
		request: AgentRunRequest,
		max_attempts: int | None = None,
		backoff: Backoff | None = None,
	) -> AttemptOutcome:
		"""Run `agent_name` until it succeeds and validates, or the budget runs out.

		Raises:
			FatalAgentError: a non-retryable failure; no further attempts are made.
			AttemptsExhaustedError: retryable failures used up the attempt budget
				or the separate output-validation budget.
		"""
		budget = max_attempts if max_attempts is not None else self.retry.max_attempts
		if budget < 1:
			raise ValueError(f"max_attempts must be >= 1, got {budget}")
		delay_for = backoff or BackoffPolicy.from_retry_config(self.retry)
		validation_failures = 0
		total_cost = 0.0
		total_turns = 0

		for i in range(1, budget + 1):
			attempt = await self.store.start_attempt(agent_name)
			with self.tracer.start_attempt_span(agent_name, attempt) as span:
				self.audit.agent_started(agent_name, attempt, build_prompt(request))
				with Timer() as timer:
					result, checkpoint, classification = await self._execute(agent_name, attempt, request)
				duration_ms = result.duration_ms or timer.elapsed_ms
				total_cost += result.cost_usd
				total_turns += result.turns or 0

				if classification is None:
					record = AttemptRecord(
						agent_name=agent_name,
						attempt_number=attempt,
						duration_ms=duration_ms,
						cost_usd=result.cost_usd,
						success=True,
						model=result.model,
					)
					await self.store.end_attempt(agent_name, record, final=True, checkpoint=checkpoint)
					self.audit.agent_finished(agent_name, record)
					span.set_attribute("attempt.success", True)
					outcome = AttemptOutcome(
						agent_name=agent_name,
						success=True,
						attempts=i,
						duration_ms=duration_ms,
						cost_usd=round(total_cost, 6),
						turns=total_turns,
						model=result.model,
						checkpoint=checkpoint,
						result_text=result.result_text,
					)
					self._record(outcome)
					logger.info(
						"%s succeeded on attempt %d (%dms, $%.4f)",
						agent_name, attempt, duration_ms, result.cost_usd,
					)
					return outcome

				if classification.kind == ErrorKind.OUTPUT_VALIDATION:
					validation_failures += 1
				validation_spent = validation_failures >= self.retry.max_output_validation_attempts
				last = (
					i == budget
					or not classification.retryable
					or (classification.kind == ErrorKind.OUTPUT_VALIDATION and validation_spent)
				)
				record = AttemptRecord(
					agent_name=agent_name,
					attempt_number=attempt,
					duration_ms=duration_ms,
					cost_usd=result.cost_usd,
					success=False,
					model=result.model,
					error=classification.message,
				)
				await self.store.end_attempt(agent_name, record, final=last)
				self.audit.agent_finished(agent_name, record)
				span.set_attribute("attempt.success", False)
				span.set_attribute("attempt.error_kind", classification.kind.value)

			await self._rollback_quietly(agent_name, f"{agent_name} attempt {attempt} failed")

			if last:
				self._record(AttemptOutcome(
					agent_name=agent_name,
					success=False,
					attempts=i,
					duration_ms=duration_ms,
					cost_usd=round(total_cost, 6),
					turns=total_turns,
					model=result.model,
					error=classification.message,
					error_kind=classification.kind,
				))
				context = {"agent": agent_name, "attempts": i}
				if not classification.retryable:
					logger.error(
						"%s failed with non-retryable %s: %s",
						agent_name, classification.kind.value, classification.message,
					)
					raise FatalAgentError(
						f"{agent_name} failed: {classification.message}",
						kind=classification.kind,
						retryable=False,
						context=context,
					)
				logger.error("%s exhausted its attempts after %d: %s", agent_name, i, classification.message)
				raise AttemptsExhaustedError(
					f"{agent_name} exhausted {i} attempt(s): {classification.message}",
					kind=classification.kind,
					retryable=False,
					context=context,
				)

			delay = delay_for(classification, i)
			logger.warning(
				"%s attempt %d failed (%s), retrying in %.1fs: %s",
				agent_name, attempt, classification.kind.value, delay, classification.message,
			)
			if delay > 0:
				await asyncio.sleep(delay)

		raise AssertionError("unreachable")

	async def _execute(
		self, agent_name: str, attempt: int, request: AgentRunRequest,
	) -> tuple[AgentRunResult, str | None, Classification | None]:
		"""One attempt. Returns (result, commit hash, failure classification or None)."""
		try:
			await self.checkpointer.checkpoint(agent_name, attempt)
		except PipelineError as exc:
			return AgentRunResult(success=False, error=str(exc)), None, exc.classification

		def on_event(event_type: str, data: dict[str, Any]) -> None:
			self.audit.agent_event(agent_name, attempt, event_type, data)

		def on_beat(beats: int, elapsed: float) -> None:
			self.audit.agent_event(agent_name, attempt, "heartbeat", {"beat": beats, "elapsed_s": round(elapsed, 1)})

		try:
			async with AttemptHeartbeat(self.heartbeat_interval, on_beat):
				result = await asyncio.wait_for(
					self.runner.run(request, on_event), timeout=self.timeout_seconds,
				)
		except asyncio.TimeoutError:
			message = f"{agent_name} timed out after {self.timeout_seconds}s (execution limit)"
			result = AgentRunResult(success=False, error=message, error_kind=ErrorKind.EXECUTION_LIMIT)
		except PipelineError as exc:
			return AgentRunResult(success=False, error=str(exc), error_kind=exc.kind), None, exc.classification
		except Exception as exc:
			logger.exception("Runner raised for %s attempt %d", agent_name, attempt)
			result = AgentRunResult(success=False, error=f"{type(exc).__name__}: {exc}")

		if not result.success:
			return result, None, self._classify_failure(result)

		if self._looks_like_billing_notice(result):
			message = truncate_error(f"Billing limit suspected for {agent_name}: {result.result_text}")
			return result, None, Classification(ErrorKind.BILLING_OR_QUOTA, True, message)

		if not self.validator.validate(agent_name, request.workspace_path, result):
			message = f"{agent_name} failed output validation"
			return result, None, Classification(ErrorKind.OUTPUT_VALIDATION, True, message)

		try:
			checkpoint = await self.checkpointer.commit(agent_name)
		except PipelineError as exc:
			return result, None, exc.classification
		return result, checkpoint, None

	def _classify_failure(self, result: AgentRunResult) -> Classification:
		message = result.error or "unknown runner failure"
		if result.error_kind is not None:
			return Classification(
				kind=result.error_kind,
				retryable=result.error_kind in RETRYABLE_KINDS,
				message=truncate_error(message),
			)
		return classify(message, unknown_retryable=self.retry.unknown_retryable)

	@staticmethod
	def _looks_like_billing_notice(result: AgentRunResult) -> bool:
		turns = result.turns if result.turns is not None else 0
		return (
			turns <= _BILLING_GUARD_MAX_TURNS
			and result.cost_usd == 0
			and looks_like_billing_notice(result.result_text)
		)

	async def _rollback_quietly(self, agent_name: str, reason: str) -> None:
		try:
			await self.checkpointer.rollback(reason)
		except PipelineError as exc:
			# The next checkpoint rolls back again before the retry runs.
			logger.error("Rollback after %s failed: %s", agent_name, exc)

	def _record(self, outcome: AttemptOutcome) -> None:
		if self.context is not None:
			self.context.record(outcome)
