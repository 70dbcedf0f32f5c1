"""Deliverable/queue gate deciding whether a vulnerability type gets exploited.

The gate is a fixed sequence of step functions. Each step takes the gate
state and returns either GateOk (carrying the next state) or GateError;
the first GateError short-circuits the remaining steps.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Union

from pydantic import ValidationError

from pipeline_control.constants import (
	DELIVERABLES_DIR,
	VULN_TYPES,
	analysis_deliverable,
	exploitation_queue,
)
from pipeline_control.errors import QueueValidationError
from pipeline_control.models import ErrorKind, ExploitationDecision, QueueSchema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateState:
	work_type: str
	workspace: Path
	deliverable_path: Path | None = None
	queue_path: Path | None = None
	deliverable_exists: bool = False
	queue_exists: bool = False
	items: tuple[Any, ...] | None = None
	decision: ExploitationDecision | None = None


@dataclass(frozen=True)
class GateOk:
	state: GateState


@dataclass(frozen=True)
class GateError:
	error: QueueValidationError


GateResult = Union[GateOk, GateError]
GateStep = Callable[[GateState], GateResult]


def _retryable(message: str, state: GateState) -> GateError:
	return GateError(QueueValidationError(
		message,
		kind=ErrorKind.OUTPUT_VALIDATION,
		retryable=True,
		context={"work_type": state.work_type},
	))


def resolve_paths(state: GateState) -> GateResult:
	if state.work_type not in VULN_TYPES:
		return GateError(QueueValidationError(
			f"Unknown vulnerability type: {state.work_type}",
			kind=ErrorKind.INVALID_REQUEST,
			retryable=False,
			context={"work_type": state.work_type},
		))
	deliverables = state.workspace / DELIVERABLES_DIR
	return GateOk(replace(
		state,
		deliverable_path=deliverables / analysis_deliverable(state.work_type),
		queue_path=deliverables / exploitation_queue(state.work_type),
	))


def check_existence(state: GateState) -> GateResult:
	assert state.deliverable_path is not None and state.queue_path is not None
	return GateOk(replace(
		state,
		deliverable_exists=state.deliverable_path.is_file(),
		queue_exists=state.queue_path.is_file(),
	))


def enforce_symmetry(state: GateState) -> GateResult:
	"""Both artifacts must exist together; a partial pair is retried upstream."""
	if state.deliverable_exists and state.queue_exists:
		return GateOk(state)
	if not state.deliverable_exists and not state.queue_exists:
		return _retryable(
			f"Analysis failed: neither deliverable nor queue file exists for {state.work_type}. "
			"Analysis agent must create both files.",
			state,
		)
	if state.deliverable_exists:
		return _retryable(
			f"Analysis incomplete: deliverable exists but queue file missing for {state.work_type}. "
			f"Analysis agent must create both files ({state.queue_path}).",
			state,
		)
	return _retryable(
		f"Analysis incomplete: queue exists but deliverable file missing for {state.work_type}. "
		f"Analysis agent must create both files ({state.deliverable_path}).",
		state,
	)


def parse_queue(state: GateState) -> GateResult:
	assert state.queue_path is not None
	try:
		raw = state.queue_path.read_text(encoding="utf-8")
	except OSError as exc:
		return GateError(QueueValidationError(
			f"Failed to read queue file for {state.work_type}: {exc}",
			kind=ErrorKind.CONFIGURATION,
			retryable=False,
			context={"work_type": state.work_type, "path": str(state.queue_path)},
		))
	except UnicodeDecodeError as exc:
		return _retryable(
			f"Queue file is not valid UTF-8 for {state.work_type}: {exc}. Analysis agent must fix the queue.",
			state,
		)
	try:
		data = json.loads(raw)
	except json.JSONDecodeError as exc:
		return _retryable(
			f"Queue file is not valid JSON for {state.work_type}: {exc}. Analysis agent must fix the queue.",
			state,
		)
	if not isinstance(data, dict):
		return _retryable(
			f"Queue structure invalid for {state.work_type}: expected an object with an items array",
			state,
		)
	try:
		queue = QueueSchema.model_validate(data)
	except ValidationError:
		return _retryable(
			f"Queue structure invalid for {state.work_type}: missing or invalid items array",
			state,
		)
	return GateOk(replace(state, items=tuple(queue.items)))


def make_decision(state: GateState) -> GateResult:
	assert state.items is not None
	count = len(state.items)
	return GateOk(replace(state, decision=ExploitationDecision(
		should_exploit=count > 0,
		vulnerability_count=count,
		work_type=state.work_type,
	)))


STEPS: tuple[GateStep, ...] = (
	resolve_paths,
	check_existence,
	enforce_symmetry,
	parse_queue,
	make_decision,
)


def run_gate(work_type: str, workspace: str | Path) -> GateResult:
	result: GateResult = GateOk(GateState(work_type=work_type, workspace=Path(workspace)))
	for step in STEPS:
		if isinstance(result, GateError):
			break
		result = step(result.state)
	return result


def decide(work_type: str, workspace: str | Path) -> ExploitationDecision | QueueValidationError:
	"""Validate the artifact pair for `work_type` and decide on exploitation.

	Returns the decision, or the classified QueueValidationError.
	"""
	result = run_gate(work_type, workspace)
	if isinstance(result, GateError):
		logger.warning("%s queue gate failed: %s", work_type, result.error)
		return result.error
	decision = result.state.decision
	assert decision is not None
	logger.info(
		"%s: %d item(s) queued, exploit=%s",
		work_type, decision.vulnerability_count, decision.should_exploit,
	)
	return decision


def decide_or_raise(work_type: str, workspace: str | Path) -> ExploitationDecision:
	result = decide(work_type, workspace)
	if isinstance(result, QueueValidationError):
		raise result
	return result
