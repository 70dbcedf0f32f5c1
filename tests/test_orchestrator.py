"""Tests for the pipeline orchestrator state machine."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from conftest import (
	ScriptedRunner,
	SideEffect,
	make_record,
	make_result,
	make_session,
	write_deliverable,
	write_queue,
)

from pipeline_control.config import PipelineConfig
from pipeline_control.constants import REPORT_FILENAME, VULN_TYPES
from pipeline_control.errors import NO_BACKOFF, FatalAgentError, InvalidTransitionError
from pipeline_control.models import AgentRunRequest, AgentRunResult
from pipeline_control.orchestrator import PipelineOrchestrator, PromptLoader, load_progress
from pipeline_control.session_store import SessionMetricsStore


def _writes(workspace: Path, *files: str, model: str = "sonnet") -> SideEffect:
	def step(request: AgentRunRequest) -> AgentRunResult:
		for name in files:
			write_deliverable(workspace, name, f"# {name}\n")
		return make_result(model=model)

	return step


def _vuln(workspace: Path, vuln_type: str, items: int) -> SideEffect:
	def step(request: AgentRunRequest) -> AgentRunResult:
		write_deliverable(workspace, f"{vuln_type}_analysis_deliverable.md", "# Analysis\n")
		write_queue(workspace, vuln_type, [{"id": f"{vuln_type}-{i}"} for i in range(items)])
		return make_result()

	return step


def _report(workspace: Path) -> SideEffect:
	def step(request: AgentRunRequest) -> AgentRunResult:
		path = workspace / "deliverables" / REPORT_FILENAME
		body = path.read_text() if path.exists() else ""
		write_deliverable(workspace, REPORT_FILENAME, f"# Report\n- Assessment Date: 2026-10-19\n\n{body}")
		return make_result(model="opus")

	return step


def full_script(workspace: Path, queued: dict[str, int] | None = None) -> dict[str, list[Any]]:
	"""Every agent succeeds; `queued` sets queue sizes per type (default 1 each)."""
	queued = queued if queued is not None else {t: 1 for t in VULN_TYPES}
	script: dict[str, list[Any]] = {
		"pre-recon": [_writes(workspace, "code_analysis_deliverable.md")],
		"recon": [_writes(workspace, "recon_deliverable.md")],
		"report": [_report(workspace)],
	}
	for t in VULN_TYPES:
		script[f"{t}-vuln"] = [_vuln(workspace, t, queued.get(t, 0))]
		script[f"{t}-exploit"] = [_writes(workspace, f"{t}_exploitation_evidence.md")]
	return script


async def _orchestrator(config: PipelineConfig, runner: Any) -> PipelineOrchestrator:
	store = await SessionMetricsStore.open(make_session(), config.audit.resolved_root)
	return PipelineOrchestrator(config, store, runner, backoff=NO_BACKOFF)


@pytest.fixture()
def plain_config(config: PipelineConfig, tmp_path: Path) -> PipelineConfig:
	"""Config whose workspace is not a git repository, so checkpoints are no-ops."""
	plain = tmp_path / "plain-workspace"
	plain.mkdir()
	config.target.workspace = str(plain)
	return config


class TestFullRun:
	async def test_all_phases_complete(self, config: PipelineConfig, git_workspace: Path) -> None:
		runner = ScriptedRunner(full_script(git_workspace, {"injection": 2, "xss": 1}))
		orch = await _orchestrator(config, runner)

		state = await orch.run()

		assert state.status == "completed"
		assert runner.calls[:2] == ["pre-recon", "recon"]
		assert runner.calls[-1] == "report"
		assert sorted(c for c in runner.calls if c.endswith("-exploit")) == ["injection-exploit", "xss-exploit"]
		assert state.sub_pipelines["auth"].decision is not None
		assert state.sub_pipelines["auth"].decision.should_exploit is False
		assert state.failed_pipelines == {}

		doc = orch.store.snapshot()
		assert doc["session"]["status"] == "completed"
		assert set(doc["metrics"]["phases"]) == {
			"pre-recon", "recon", "vulnerability-analysis", "exploitation", "reporting",
		}

		report = (git_workspace / "deliverables" / REPORT_FILENAME).read_text()
		assert "- Model: sonnet, opus" in report
		assert "injection_exploitation_evidence.md" in report

		assert state.summary is not None
		assert state.summary["agentCount"] == 10

	async def test_progress_persisted(self, config: PipelineConfig, git_workspace: Path) -> None:
		orch = await _orchestrator(config, ScriptedRunner(full_script(git_workspace, {})))

		await orch.run()

		progress = load_progress(config.audit.resolved_root, "s1")
		assert progress is not None
		assert progress["status"] == "completed"
		assert progress["sessionId"] == "s1"
		assert progress["currentPhase"] == "reporting"
		assert "report" in progress["completedAgents"]
		assert progress["summary"]["agentCount"] == 8
		assert orch.progress()["status"] == "completed"


class TestFailures:
	async def test_sequential_failure_aborts_session(
		self, plain_config: PipelineConfig,
	) -> None:
		workspace = plain_config.target.resolved_workspace
		script = full_script(workspace)
		script["recon"] = [make_result(success=False, error="401 authentication failed")]
		runner = ScriptedRunner(script)
		orch = await _orchestrator(plain_config, runner)

		with pytest.raises(FatalAgentError):
			await orch.run()

		assert runner.calls == ["pre-recon", "recon"]
		assert orch.state.status == "failed"
		assert orch.state.failed_agent == "recon"
		assert orch.store.snapshot()["session"]["status"] == "failed"
		progress = load_progress(plain_config.audit.resolved_root, "s1")
		assert progress is not None
		assert progress["failedAgent"] == "recon"
		assert "authentication" in progress["error"]

	async def test_failed_sub_pipeline_does_not_stop_siblings(
		self, plain_config: PipelineConfig,
	) -> None:
		"""xss never writes its queue; the other types still finish and the session completes."""
		workspace = plain_config.target.resolved_workspace
		script = full_script(workspace)
		script["xss-vuln"] = [_writes(workspace, "xss_analysis_deliverable.md")]
		runner = ScriptedRunner(script)
		orch = await _orchestrator(plain_config, runner)

		state = await orch.run()

		assert state.status == "completed"
		assert set(state.failed_pipelines) == {"xss"}
		assert "xss-exploit" not in runner.calls
		assert runner.calls.count("xss-vuln") == plain_config.retry.max_output_validation_attempts
		for t in ("injection", "auth", "ssrf", "authz"):
			assert f"{t}-exploit" in runner.calls
		assert orch.progress()["failedPipelines"]["xss"]
		assert orch.store.agent("xss-vuln") is not None
		assert orch.store.agent("xss-vuln").status == "failed"

	async def test_failed_exploit_recorded_per_type(
		self, plain_config: PipelineConfig,
	) -> None:
		workspace = plain_config.target.resolved_workspace
		script = full_script(workspace)
		script["ssrf-exploit"] = [make_result(success=False, error="Reached max turns (50)")]
		orch = await _orchestrator(plain_config, ScriptedRunner(script))

		state = await orch.run()

		assert state.status == "completed"
		assert list(state.failed_pipelines) == ["ssrf"]
		assert "max turns" in state.failed_pipelines["ssrf"]

	async def test_undecodable_evidence_does_not_fail_session(self, plain_config: PipelineConfig) -> None:
		workspace = plain_config.target.resolved_workspace
		script = full_script(workspace)

		def binary_evidence(request: AgentRunRequest) -> AgentRunResult:
			write_deliverable(workspace, "xss_exploitation_evidence.md")
			(workspace / "deliverables" / "xss_exploitation_evidence.md").write_bytes(b"# XSS\n\xff\xfe payload\n")
			return make_result()

		script["xss-exploit"] = [binary_evidence]
		orch = await _orchestrator(plain_config, ScriptedRunner(script))

		state = await orch.run()

		assert state.status == "completed"
		assert state.failed_agent is None
		report = (workspace / "deliverables" / REPORT_FILENAME).read_text(encoding="utf-8")
		assert "payload" in report

	async def test_reporting_failure_not_blamed_on_last_exploit_agent(
		self, plain_config: PipelineConfig,
	) -> None:
		orch = await _orchestrator(plain_config, ScriptedRunner(full_script(plain_config.target.resolved_workspace)))

		with patch(
			"pipeline_control.orchestrator.reporting.assemble_final_report", side_effect=RuntimeError("disk gone"),
		):
			with pytest.raises(RuntimeError):
				await orch.run()

		assert orch.state.status == "failed"
		assert orch.state.current_phase == "reporting"
		assert orch.state.failed_agent is None


class TestResume:
	async def test_succeeded_agents_are_skipped(self, plain_config: PipelineConfig) -> None:
		workspace = plain_config.target.resolved_workspace
		store = await SessionMetricsStore.open(make_session(), plain_config.audit.resolved_root)
		await store.end_attempt("pre-recon", make_record(agent_name="pre-recon"))
		runner = ScriptedRunner(full_script(workspace, {}))
		orch = PipelineOrchestrator(plain_config, store, runner, backoff=NO_BACKOFF)

		await orch.run()

		assert "pre-recon" not in runner.calls
		assert "pre-recon" in orch.state.completed_agents

	@pytest.mark.parametrize("status", ["failed", "completed"])
	async def test_finished_session_is_not_rerun(self, plain_config: PipelineConfig, status: str) -> None:
		store = await SessionMetricsStore.open(make_session(), plain_config.audit.resolved_root)
		await store.update_session_status(status)
		resumed = await SessionMetricsStore.open(make_session(), plain_config.audit.resolved_root)
		runner = ScriptedRunner(full_script(plain_config.target.resolved_workspace, {}))
		orch = PipelineOrchestrator(plain_config, resumed, runner, backoff=NO_BACKOFF)

		with pytest.raises(InvalidTransitionError, match=f"already {status}"):
			await orch.run()

		assert runner.calls == []
		assert load_progress(plain_config.audit.resolved_root, "s1") is None
		assert orch.store.snapshot()["session"]["status"] == status


class TestConcurrency:
	async def test_sub_pipelines_respect_concurrency_limit(self, plain_config: PipelineConfig) -> None:
		plain_config.pipeline.max_concurrent_pipelines = 2
		workspace = plain_config.target.resolved_workspace
		scripted = ScriptedRunner(full_script(workspace, {}))
		active = 0
		peak = 0

		class SlowVulnRunner:
			async def run(self, request: AgentRunRequest, on_event: Any = None) -> AgentRunResult:
				nonlocal active, peak
				is_vuln = "-vuln agent" in request.task_description
				if is_vuln:
					active += 1
					peak = max(peak, active)
					await asyncio.sleep(0.2)
					active -= 1
				return await scripted.run(request, on_event)

		orch = await _orchestrator(plain_config, SlowVulnRunner())
		await orch.run()

		assert peak == 2


class TestPromptLoader:
	def test_prompt_file_substitution(self, tmp_path: Path) -> None:
		(tmp_path / "recon.md").write_text("Map {target} from {workspace}")
		loader = PromptLoader(tmp_path, "https://t.example", "/ws")
		assert loader.load("recon") == "Map https://t.example from /ws"

	def test_default_prompt(self) -> None:
		loader = PromptLoader(None, "https://t.example", "/ws")
		assert loader.load("recon").startswith("Run the recon agent against https://t.example")


class TestCreate:
	async def test_create_opens_named_session(self, config: PipelineConfig) -> None:
		orch = await PipelineOrchestrator.create(config, runner=ScriptedRunner(), session_id="named")

		assert orch.session.id == "named"
		assert (config.audit.resolved_root / "named" / "session.json").exists()
		data = json.loads((config.audit.resolved_root / "named" / "session.json").read_text())
		assert data["session"]["target"] == "https://target.example"
