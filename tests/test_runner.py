"""Tests for the Claude CLI runner and stream-json parsing."""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path

import pytest
from conftest import make_request

from pipeline_control.config import RunnerConfig
from pipeline_control.models import AgentRunRequest, ErrorKind
from pipeline_control.runner import ClaudeCliRunner, build_prompt, parse_stream_output


def _fake_cli(tmp_path: Path, events: list[dict], exit_code: int = 0, extra: str = "") -> str:
	"""Write an executable that prints `events` as stream-json and exits."""
	script = tmp_path / "fake-claude"
	body = "\n".join(f"echo '{json.dumps(e)}'" for e in events)
	script.write_text(f"#!/bin/sh\n{extra}\n{body}\nexit {exit_code}\n")
	script.chmod(0o755)
	return str(script)


SYSTEM = {"type": "system", "subtype": "init", "model": "claude-sonnet-4"}
ASSISTANT = {"type": "assistant", "message": {"content": [{"type": "text", "text": "working"}]}}


def _result(**overrides: object) -> dict:
	event: dict = {
		"type": "result",
		"subtype": "success",
		"is_error": False,
		"result": "All deliverables saved.",
		"total_cost_usd": 0.42,
		"num_turns": 17,
		"duration_ms": 9000,
	}
	event.update(overrides)
	return event


class TestParseStreamOutput:
	def test_result_and_model(self) -> None:
		lines = [json.dumps(SYSTEM), "not json", json.dumps(ASSISTANT), json.dumps(_result())]
		result, model = parse_stream_output(lines)
		assert result is not None
		assert result.total_cost_usd == 0.42
		assert result.num_turns == 17
		assert model == "claude-sonnet-4"

	def test_no_result_event(self) -> None:
		result, model = parse_stream_output([json.dumps(SYSTEM)])
		assert result is None
		assert model == "claude-sonnet-4"

	def test_malformed_result_ignored(self) -> None:
		result, _ = parse_stream_output([json.dumps({"type": "result", "num_turns": "many"})])
		assert result is None


class TestBuildCommand:
	def test_flags(self) -> None:
		runner = ClaudeCliRunner(RunnerConfig(model="opus", max_turns=50, extra_args=["--debug"]))
		cmd = runner.build_command("do it")
		assert cmd[:2] == ["claude", "-p"]
		assert cmd[cmd.index("--output-format") + 1] == "stream-json"
		assert cmd[cmd.index("--model") + 1] == "opus"
		assert cmd[cmd.index("--max-turns") + 1] == "50"
		assert "--debug" in cmd
		assert cmd[-1] == "do it"

	def test_no_max_turns_by_default(self) -> None:
		assert "--max-turns" not in ClaudeCliRunner().build_command("x")

	def test_prompt_includes_context(self) -> None:
		request = AgentRunRequest(task_description="task", workspace_path="/ws", context_text="ctx")
		assert build_prompt(request) == "ctx\n\ntask"


class TestRun:
	async def test_success(self, tmp_path: Path) -> None:
		command = _fake_cli(tmp_path, [SYSTEM, ASSISTANT, _result()])
		events: list[str] = []

		result = await ClaudeCliRunner(RunnerConfig(command=command)).run(
			make_request(tmp_path), lambda t, data: events.append(t),
		)

		assert result.success is True
		assert result.result_text == "All deliverables saved."
		assert result.cost_usd == 0.42
		assert result.turns == 17
		assert result.duration_ms == 9000
		assert result.model == "claude-sonnet-4"
		assert events == ["system", "assistant", "result"]

	async def test_error_result(self, tmp_path: Path) -> None:
		command = _fake_cli(tmp_path, [_result(subtype="error_max_turns", is_error=True, result=None)], exit_code=1)

		result = await ClaudeCliRunner(RunnerConfig(command=command)).run(make_request(tmp_path))

		assert result.success is False
		assert result.error == "error_max_turns"

	async def test_error_text_from_result(self, tmp_path: Path) -> None:
		command = _fake_cli(tmp_path, [_result(is_error=True, result="Invalid API key")])

		result = await ClaudeCliRunner(RunnerConfig(command=command)).run(make_request(tmp_path))

		assert result.success is False
		assert result.error == "Invalid API key"

	async def test_missing_result_event(self, tmp_path: Path) -> None:
		command = _fake_cli(tmp_path, [SYSTEM], exit_code=2, extra="echo 'Segmentation fault'")

		result = await ClaudeCliRunner(RunnerConfig(command=command)).run(make_request(tmp_path))

		assert result.success is False
		assert "exited 2 without a result event" in (result.error or "")
		assert "Segmentation fault" in (result.error or "")

	async def test_missing_binary_is_configuration_error(self, tmp_path: Path) -> None:
		runner = ClaudeCliRunner(RunnerConfig(command=str(tmp_path / "no-such-cli")))

		result = await runner.run(make_request(tmp_path))

		assert result.success is False
		assert result.error_kind == ErrorKind.CONFIGURATION
		assert "not installed" in (result.error or "")

	async def test_cancellation_kills_subprocess(self, tmp_path: Path) -> None:
		command = _fake_cli(tmp_path, [], extra="sleep 30")
		runner = ClaudeCliRunner(RunnerConfig(command=command))

		started = time.monotonic()
		with pytest.raises(asyncio.TimeoutError):
			await asyncio.wait_for(runner.run(make_request(tmp_path)), timeout=0.3)

		assert time.monotonic() - started < 10

	async def test_line_longer_than_default_stream_limit(self, tmp_path: Path) -> None:
		"""A single 100 KB tool-output line is read whole."""
		big = {"type": "user", "message": {"content": [{"type": "tool_result", "content": "x" * 100_000}]}}
		command = _fake_cli(tmp_path, [SYSTEM, big, _result()])
		events: list[str] = []

		result = await ClaudeCliRunner(RunnerConfig(command=command)).run(
			make_request(tmp_path), lambda t, data: events.append(t),
		)

		assert result.success is True
		assert events == ["system", "user", "result"]

	async def test_read_failure_kills_subprocess(self, tmp_path: Path) -> None:
		"""When reading the stream fails, the child never outlives the call."""
		marker = tmp_path / "still-running"
		script = tmp_path / "fake-claude"
		script.write_text(
			f"#!/bin/sh\necho '{json.dumps(ASSISTANT)}'\nsleep 1\ntouch {marker}\n",
		)
		script.chmod(0o755)
		runner = ClaudeCliRunner(RunnerConfig(command=str(script)))
		runner.stream_limit = 16

		with pytest.raises(ValueError):
			await runner.run(make_request(tmp_path))

		await asyncio.sleep(1.5)
		assert not marker.exists()
