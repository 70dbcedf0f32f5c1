"""CLI interface for pipeline-control."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from pipeline_control.config import PipelineConfig, load_config, validate_config
from pipeline_control.errors import PipelineError
from pipeline_control.metrics import format_duration, setup_logging
from pipeline_control.orchestrator import PipelineOrchestrator, load_progress
from pipeline_control.session_store import load_session_document

DEFAULT_CONFIG = "pipeline-control.toml"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="pc",
		description="Pipeline Control - checkpointed multi-phase agent pipelines",
	)
	parser.add_argument("--log-level", default=None, help="Override logging.level")
	parser.add_argument("--log-json", action="store_true", help="Emit JSON log lines")
	sub = parser.add_subparsers(dest="command")

	# pc run
	run = sub.add_parser("run", help="Run a pipeline session")
	run.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	run.add_argument("--target", default=None, help="Override target.url")
	run.add_argument("--workspace", default=None, help="Override target.workspace")
	run.add_argument("--session-id", default=None, help="Resume or name a session")
	run.add_argument(
		"--pipeline-testing", action="store_true",
		help="Use the fast retry profile and short runner timeout",
	)

	# pc status
	status = sub.add_parser("status", help="Show progress and metrics of a session")
	status.add_argument("session_id")
	status.add_argument("--config", default=DEFAULT_CONFIG)
	status.add_argument("--json", action="store_true", help="Print raw JSON")

	# pc validate-config
	vc = sub.add_parser("validate-config", help="Validate config file")
	vc.add_argument("--config", default=DEFAULT_CONFIG)

	# pc serve
	serve = sub.add_parser("serve", help="Serve the read-only progress API")
	serve.add_argument("--config", default=DEFAULT_CONFIG)
	serve.add_argument("--host", default=None)
	serve.add_argument("--port", type=int, default=None)

	# pc mcp
	sub.add_parser("mcp", help="Start the deliverables MCP server on stdio")

	return parser


def _load_config_or_default(path: str) -> PipelineConfig:
	if Path(path).exists():
		return load_config(path)
	logger.info("Config %s not found, using defaults", path)
	return PipelineConfig()


def cmd_run(args: argparse.Namespace) -> int:
	"""Run one pipeline session to completion."""
	config = _load_config_or_default(args.config)
	if args.target:
		config.target.url = args.target
	if args.workspace:
		config.target.workspace = args.workspace
	if args.pipeline_testing:
		config.pipeline.testing = True

	errors = [msg for lvl, msg in validate_config(config) if lvl == "error"]
	if errors:
		for msg in errors:
			print(f"[ERROR] {msg}")
		return 1

	async def _run() -> int:
		orchestrator = await PipelineOrchestrator.create(config, session_id=args.session_id)
		print(f"Session {orchestrator.session.id} -> {config.audit.resolved_root / orchestrator.session.id}")
		try:
			state = await orchestrator.run()
		except PipelineError as exc:
			if orchestrator.state.failed_agent is None:
				print(f"Pipeline failed: {exc}")
			else:
				print(f"Pipeline failed at {orchestrator.state.failed_agent}: {exc}")
			return 1
		summary = state.summary or {}
		print(
			f"Completed in {format_duration(summary.get('totalDurationMs', 0))}, "
			f"{summary.get('agentCount', 0)} agent(s), ${summary.get('totalCostUsd', 0.0):.4f}"
		)
		for vuln_type, error in state.failed_pipelines.items():
			print(f"  [FAILED] {vuln_type}: {error}")
		return 0

	return asyncio.run(_run())


def cmd_status(args: argparse.Namespace) -> int:
	"""Show the persisted progress and metrics of a session."""
	config = _load_config_or_default(args.config)
	root = config.audit.resolved_root
	doc = load_session_document(root, args.session_id)
	progress = load_progress(root, args.session_id)
	if doc is None and progress is None:
		print(f"No session found: {args.session_id}")
		return 1

	if args.json:
		print(json.dumps({"session": doc, "progress": progress}, indent=2))
		return 0

	if doc is not None:
		session = doc.get("session", {})
		metrics = doc.get("metrics", {})
		print(f"Session:  {session.get('id')}  [{session.get('status')}]")
		print(f"Target:   {session.get('target')}")
		print(f"Duration: {format_duration(metrics.get('totalDurationMs', 0))}")
		print(f"Cost:     ${metrics.get('totalCostUsd', 0.0):.4f}")
		for name, agent in metrics.get("agents", {}).items():
			attempts = len(agent.get("attempts", []))
			print(f"  {name:<18} {agent.get('status'):<12} attempts={attempts} cost=${agent.get('totalCostUsd', 0.0):.4f}")
	if progress is not None:
		print(f"Phase:    {progress.get('currentPhase')}  agent: {progress.get('currentAgent')}")
		if progress.get("failedAgent"):
			print(f"Failed:   {progress['failedAgent']}: {progress.get('error', '')}")
	return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	config = load_config(args.config)
	issues = validate_config(config)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


def cmd_serve(args: argparse.Namespace) -> int:
	"""Serve the read-only progress API."""
	import uvicorn

	from pipeline_control.api import create_app

	config = _load_config_or_default(args.config)
	app = create_app(config.audit.resolved_root)
	uvicorn.run(app, host=args.host or config.api.host, port=args.port or config.api.port)
	return 0


def cmd_mcp(args: argparse.Namespace) -> int:
	"""Start the MCP server."""
	from pipeline_control.mcp_server import run_mcp_server

	run_mcp_server()
	return 0


COMMANDS = {
	"run": cmd_run,
	"status": cmd_status,
	"validate-config": cmd_validate_config,
	"serve": cmd_serve,
	"mcp": cmd_mcp,
}


def main(argv: list[str] | None = None) -> int:
	parser = build_parser()
	args = parser.parse_args(argv)

	level = args.log_level
	json_format = args.log_json
	if hasattr(args, "config") and Path(args.config).exists():
		try:
			logging_config = load_config(args.config).logging
		except (OSError, ValueError) as exc:
			print(f"Error: could not load {args.config}: {exc}")
			return 1
		level = level or logging_config.level
		json_format = json_format or logging_config.json_format
	setup_logging(level or "INFO", json_format)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	return handler(args)


if __name__ == "__main__":
	sys.exit(main())
