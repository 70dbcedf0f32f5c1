"""Shared pytest fixtures and factory functions for pipeline-control tests."""

from __future__ import annotations

import json
import os
import subprocess
from pathlib import Path
from typing import Any, Callable

import pytest

from pipeline_control.config import CheckpointConfig, PipelineConfig, RetryConfig
from pipeline_control.models import AgentRunRequest, AgentRunResult, AttemptRecord, Session

GIT_ENV = {
	"GIT_AUTHOR_NAME": "test",
	"GIT_AUTHOR_EMAIL": "test@test.com",
	"GIT_COMMITTER_NAME": "test",
	"GIT_COMMITTER_EMAIL": "test@test.com",
}


def git(repo: Path, *args: str) -> str:
	"""Run git synchronously in `repo` and return stdout."""
	result = subprocess.run(
		["git", *args],
		cwd=str(repo), check=True, capture_output=True, text=True,
		env={**os.environ, **GIT_ENV},
	)
	return result.stdout


@pytest.fixture()
def git_workspace(tmp_path: Path) -> Path:
	"""A real git repository with one initial commit."""
	repo = tmp_path / "workspace"
	repo.mkdir()
	git(repo, "init")
	git(repo, "checkout", "-b", "main")
	(repo / "README.md").write_text("# Target\n")
	git(repo, "add", ".")
	git(repo, "commit", "-m", "Initial commit")
	return repo


@pytest.fixture()
def audit_root(tmp_path: Path) -> Path:
	return tmp_path / "audit"


@pytest.fixture()
def checkpoint_config() -> CheckpointConfig:
	"""Checkpoint settings with no sleep between lock retries."""
	return CheckpointConfig(lock_backoff_seconds=0.0)


@pytest.fixture()
def config(git_workspace: Path, audit_root: Path) -> PipelineConfig:
	"""PipelineConfig pointing at the tmp git workspace with fast, jitter-free retries."""
	cfg = PipelineConfig()
	cfg.target.url = "https://target.example"
	cfg.target.workspace = str(git_workspace)
	cfg.audit.root = str(audit_root)
	cfg.retry = RetryConfig(base_seconds=0.0, jitter_seconds=0.0, billing_base_seconds=0.0)
	cfg.checkpoint = CheckpointConfig(lock_backoff_seconds=0.0)
	cfg.runner.heartbeat_interval = 0
	return cfg


def make_session(**overrides: Any) -> Session:
	"""Create a Session with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "s1",
		"target": "https://target.example",
	}
	defaults.update(overrides)
	return Session(**defaults)


def make_record(**overrides: Any) -> AttemptRecord:
	"""Create an AttemptRecord with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"agent_name": "recon",
		"attempt_number": 1,
		"duration_ms": 1000,
		"cost_usd": 0.5,
		"success": True,
		"model": "sonnet",
	}
	defaults.update(overrides)
	return AttemptRecord(**defaults)


def make_result(**overrides: Any) -> AgentRunResult:
	"""Create a successful AgentRunResult, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"success": True,
		"result_text": "Analysis complete.",
		"duration_ms": 1200,
		"cost_usd": 0.25,
		"turns": 12,
		"model": "sonnet",
	}
	defaults.update(overrides)
	return AgentRunResult(**defaults)


def make_request(workspace: Path, **overrides: Any) -> AgentRunRequest:
	defaults: dict[str, Any] = {
		"task_description": "Do the work",
		"workspace_path": str(workspace),
	}
	defaults.update(overrides)
	return AgentRunRequest(**defaults)


def write_deliverable(workspace: Path, filename: str, content: str = "# Findings\n") -> Path:
	path = workspace / "deliverables" / filename
	path.parent.mkdir(parents=True, exist_ok=True)
	path.write_text(content)
	return path


def write_queue(workspace: Path, vuln_type: str, items: list[Any]) -> Path:
	return write_deliverable(workspace, f"{vuln_type}_exploitation_queue.json", json.dumps({"items": items}))


SideEffect = Callable[[AgentRunRequest], AgentRunResult]


class ScriptedRunner:
	"""AgentRunner fake: per-agent queue of results or callables, keyed by prompt marker.

	The orchestrator's default prompts contain the agent name, which is how
	calls are routed. Callables receive the request and may write deliverables.
	"""

	def __init__(self, script: dict[str, list[AgentRunResult | SideEffect]] | None = None) -> None:
		self.script = {k: list(v) for k, v in (script or {}).items()}
		self.calls: list[str] = []

	def _agent_for(self, request: AgentRunRequest) -> str:
		# longest name first so "auth" never shadows "authz"
		for name in sorted(self.script, key=len, reverse=True):
			if f"Run the {name} agent" in request.task_description:
				return name
		raise AssertionError(f"No script for prompt: {request.task_description}")

	async def run(self, request: AgentRunRequest, on_event: Any = None) -> AgentRunResult:
		agent = self._agent_for(request)
		self.calls.append(agent)
		steps = self.script[agent]
		step = steps.pop(0) if len(steps) > 1 else steps[0]
		if callable(step):
			return step(request)
		return step
