"""AgentRunner contract and the Claude CLI subprocess implementation."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Protocol

from pydantic import ValidationError

from pipeline_control.config import PipelineConfig, RunnerConfig, runner_subprocess_env
from pipeline_control.models import (
	AgentRunRequest,
	AgentRunResult,
	ErrorKind,
	RunnerResultSchema,
)

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, dict[str, Any]], None]

_OUTPUT_TAIL_CHARS = 2000
# stream-json lines carry whole tool outputs
_STREAM_LIMIT = 16 * 1024 * 1024


class AgentRunner(Protocol):
	"""Executes one agent attempt. Must not raise for ordinary agent failures."""

	async def run(self, request: AgentRunRequest, on_event: EventCallback | None = None) -> AgentRunResult: ...


def build_prompt(request: AgentRunRequest) -> str:
	if request.context_text:
		return f"{request.context_text}\n\n{request.task_description}"
	return request.task_description


def parse_stream_output(lines: list[str]) -> tuple[RunnerResultSchema | None, str | None]:
	"""Find the final result event and the model from a stream-json transcript."""
	result: RunnerResultSchema | None = None
	model: str | None = None
	for line in lines:
		line = line.strip()
		if not line.startswith("{"):
			continue
		try:
			event = json.loads(line)
		except json.JSONDecodeError:
			continue
		if not isinstance(event, dict):
			continue
		if event.get("type") == "system" and event.get("model"):
			model = str(event["model"])
		elif event.get("type") == "assistant":
			message = event.get("message")
			if isinstance(message, dict) and message.get("model"):
				model = str(message["model"])
		elif event.get("type") == "result":
			try:
				result = RunnerResultSchema.model_validate(event)
			except ValidationError as exc:
				logger.warning("Malformed result event from runner: %s", exc)
	return result, model


class ClaudeCliRunner:
	"""Runs an agent attempt as a `claude -p --output-format stream-json` subprocess.

	The wall-clock ceiling is enforced by the caller. Any abnormal exit,
	cancellation included, kills the subprocess before propagating.
	"""

	stream_limit = _STREAM_LIMIT

	def __init__(self, config: RunnerConfig | None = None, pipeline_config: PipelineConfig | None = None) -> None:
		self.config = config or RunnerConfig()
		self._pipeline_config = pipeline_config

	def build_command(self, prompt: str) -> list[str]:
		cmd = [
			self.config.command,
			"-p",
			"--output-format", "stream-json",
			"--verbose",
			"--permission-mode", "bypassPermissions",
			"--model", self.config.model,
		]
		if self.config.max_turns > 0:
			cmd += ["--max-turns", str(self.config.max_turns)]
		cmd += self.config.extra_args
		cmd.append(prompt)
		return cmd

	async def run(self, request: AgentRunRequest, on_event: EventCallback | None = None) -> AgentRunResult:
		start = time.monotonic()
		cmd = self.build_command(build_prompt(request))
		try:
			proc = await asyncio.create_subprocess_exec(
				*cmd,
				cwd=request.workspace_path,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT,
				limit=self.stream_limit,
				env=runner_subprocess_env(self._pipeline_config, request.env_overrides),
			)
		except FileNotFoundError:
			return AgentRunResult(
				success=False,
				duration_ms=int((time.monotonic() - start) * 1000),
				error=f"Runner CLI not installed: {self.config.command} not found on PATH",
				error_kind=ErrorKind.CONFIGURATION,
			)

		lines: list[str] = []
		try:
			assert proc.stdout is not None
			while True:
				raw = await proc.stdout.readline()
				if not raw:
					break
				line = raw.decode("utf-8", errors="replace")
				lines.append(line)
				if on_event is not None:
					self._forward(line, on_event)
			await proc.wait()
		except BaseException:
			if proc.returncode is None:
				try:
					proc.kill()
				except ProcessLookupError:
					pass
				await proc.wait()
			raise

		duration_ms = int((time.monotonic() - start) * 1000)
		result, model = parse_stream_output(lines)
		if result is None:
			tail = "".join(lines)[-_OUTPUT_TAIL_CHARS:]
			return AgentRunResult(
				success=False,
				duration_ms=duration_ms,
				model=model,
				error=f"Runner exited {proc.returncode} without a result event: {tail}",
			)

		failed = result.is_error or result.subtype.startswith("error") or proc.returncode != 0
		error: str | None = None
		if failed:
			parts = [p for p in (result.subtype if result.subtype != "success" else "", result.result) if p]
			error = ": ".join(parts) or f"Runner exited {proc.returncode}"
		return AgentRunResult(
			success=not failed,
			result_text=result.result,
			duration_ms=result.duration_ms or duration_ms,
			cost_usd=result.total_cost_usd,
			turns=result.num_turns,
			model=model or self.config.model,
			error=error,
		)

	@staticmethod
	def _forward(line: str, on_event: EventCallback) -> None:
		try:
			event = json.loads(line)
		except json.JSONDecodeError:
			return
		if isinstance(event, dict):
			on_event(str(event.get("type", "output")), event)
