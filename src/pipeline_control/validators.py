"""Output validation: did an agent attempt leave the deliverables it owes?"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Protocol

from pipeline_control.constants import AGENT_DELIVERABLES, DELIVERABLES_DIR, VULN_TYPES, vuln_agent
from pipeline_control.errors import QueueValidationError
from pipeline_control.models import AgentRunResult
from pipeline_control.queue_gate import decide

logger = logging.getLogger(__name__)

AgentCheck = Callable[[Path], bool]


class OutputValidator(Protocol):
	def validate(self, agent_name: str, workspace_path: str | Path, result: AgentRunResult) -> bool: ...


def deliverable_exists(filename: str) -> AgentCheck:
	"""Check that `deliverables/<filename>` exists and is non-empty."""

	def check(workspace: Path) -> bool:
		path = workspace / DELIVERABLES_DIR / filename
		ok = path.is_file() and path.stat().st_size > 0
		if not ok:
			logger.warning("Missing deliverable %s", path)
		return ok

	return check


def queue_pair_valid(vuln_type: str) -> AgentCheck:
	def check(workspace: Path) -> bool:
		return not isinstance(decide(vuln_type, workspace), QueueValidationError)

	return check


def default_checks() -> dict[str, AgentCheck]:
	checks: dict[str, AgentCheck] = {
		agent: deliverable_exists(filename) for agent, filename in AGENT_DELIVERABLES.items()
	}
	for vuln_type in VULN_TYPES:
		checks[vuln_agent(vuln_type)] = queue_pair_valid(vuln_type)
	return checks


class DeliverableValidator:
	"""Per-agent deliverable checks.

	Agents without a registered check pass when the runner reported success
	with non-empty result text.
	"""

	def __init__(self, checks: dict[str, AgentCheck] | None = None) -> None:
		self._checks = default_checks() if checks is None else dict(checks)

	def register(self, agent_name: str, check: AgentCheck) -> None:
		self._checks[agent_name] = check

	def validate(self, agent_name: str, workspace_path: str | Path, result: AgentRunResult) -> bool:
		check = self._checks.get(agent_name)
		if check is None:
			return result.success and bool(result.result_text and result.result_text.strip())
		return check(Path(workspace_path))
