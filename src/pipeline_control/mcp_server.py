"""MCP server exposing deliverable tools to running agents."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool
from pydantic import ValidationError

from pipeline_control import queue_gate
from pipeline_control.constants import DELIVERABLE_TYPES, DELIVERABLES_DIR
from pipeline_control.errors import QueueValidationError
from pipeline_control.models import QueueSchema
from pipeline_control.path_security import resolve_in_workspace

logger = logging.getLogger(__name__)

WORKSPACE_ENV = "PIPELINE_WORKSPACE"

server = Server("pipeline-control")


def _workspace() -> Path:
	return Path(os.environ.get(WORKSPACE_ENV, os.getcwd())).resolve()


# -- Tool definitions --

TOOLS = [
	Tool(
		name="save_deliverable",
		description=(
			"Save a deliverable into the workspace deliverables directory. "
			"Queue deliverables must be JSON with an items array."
		),
		inputSchema={
			"type": "object",
			"properties": {
				"deliverable_type": {
					"type": "string",
					"enum": sorted(DELIVERABLE_TYPES),
					"description": "Type of deliverable to save",
				},
				"content": {"type": "string", "description": "Deliverable content"},
				"file_path": {
					"type": "string",
					"description": "Workspace-relative file to read the content from instead of `content`",
				},
			},
			"required": ["deliverable_type"],
		},
	),
	Tool(
		name="check_queue",
		description="Check whether a vulnerability type's deliverable and queue pair is complete and well formed.",
		inputSchema={
			"type": "object",
			"properties": {
				"vuln_type": {"type": "string", "description": "injection, xss, auth, ssrf or authz"},
			},
			"required": ["vuln_type"],
		},
	),
]


@server.list_tools()
async def list_tools() -> list[Tool]:
	return TOOLS


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
	try:
		result = _dispatch(name, arguments, _workspace())
		return [TextContent(type="text", text=json.dumps(result, indent=2))]
	except Exception as e:
		logger.warning("Tool %s failed: %s", name, e)
		return [TextContent(type="text", text=json.dumps({"error": str(e)}))]


def _dispatch(name: str, args: dict, workspace: Path) -> dict:
	if name == "save_deliverable":
		return _save_deliverable(args, workspace)
	if name == "check_queue":
		return _check_queue(args, workspace)
	return {"error": f"Unknown tool: {name}"}


def _validate_queue_content(content: str) -> str | None:
	"""Return an error message when queue content is not a valid queue."""
	try:
		data: Any = json.loads(content)
	except json.JSONDecodeError as exc:
		return f"Invalid queue JSON: {exc}"
	if not isinstance(data, dict):
		return "Invalid queue structure: expected an object with an items array"
	try:
		QueueSchema.model_validate(data)
	except ValidationError:
		return "Invalid queue structure: missing or invalid items array"
	return None


def _save_deliverable(args: dict, workspace: Path) -> dict:
	deliverable_type = args.get("deliverable_type", "")
	filename = DELIVERABLE_TYPES.get(deliverable_type)
	if filename is None:
		return {"error": f"Unknown deliverable type: {deliverable_type}"}

	content = args.get("content")
	file_path = args.get("file_path")
	if file_path:
		try:
			source = resolve_in_workspace(file_path, workspace)
		except ValueError as exc:
			return {"error": str(exc)}
		if not source.is_file():
			return {"error": f"File not found: {file_path}"}
		content = source.read_text(encoding="utf-8")
	if content is None:
		return {"error": "Either content or file_path is required"}

	if deliverable_type.endswith("_queue"):
		problem = _validate_queue_content(content)
		if problem is not None:
			return {"error": problem, "retryable": True}

	target = workspace / DELIVERABLES_DIR / filename
	target.parent.mkdir(parents=True, exist_ok=True)
	target.write_text(content, encoding="utf-8")
	logger.info("Saved %s deliverable to %s", deliverable_type, target)
	return {"status": "saved", "path": str(target.relative_to(workspace)), "bytes": len(content.encode("utf-8"))}


def _check_queue(args: dict, workspace: Path) -> dict:
	vuln_type = args.get("vuln_type", "")
	result = queue_gate.decide(vuln_type, workspace)
	if isinstance(result, QueueValidationError):
		return {"valid": False, "error": str(result), "retryable": result.retryable}
	return {
		"valid": True,
		"should_exploit": result.should_exploit,
		"vulnerability_count": result.vulnerability_count,
	}


def run_mcp_server() -> None:
	"""Entry point for `pc mcp` CLI command."""
	import asyncio

	async def _run():
		async with stdio_server() as (read_stream, write_stream):
			await server.run(read_stream, write_stream, server.create_initialization_options())

	asyncio.run(_run())
