"""Final report assembly and model metadata injection."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pipeline_control.constants import (
	DELIVERABLES_DIR,
	REPORT_FILENAME,
	VULN_TYPES,
	exploitation_evidence,
)

logger = logging.getLogger(__name__)

_DATE_MARKER = "- Assessment Date:"


def assemble_final_report(workspace: str | Path) -> Path | None:
	"""Concatenate exploitation evidence files into the report skeleton.

	Types are appended in fixed order; missing evidence files are skipped.
	Returns the report path, or None when there was no evidence at all.
	"""
	deliverables = Path(workspace) / DELIVERABLES_DIR
	sections: list[str] = []
	for vuln_type in VULN_TYPES:
		path = deliverables / exploitation_evidence(vuln_type)
		if not path.is_file():
			continue
		try:
			sections.append(path.read_text(encoding="utf-8", errors="replace").strip())
		except OSError as exc:
			logger.warning("Could not read %s: %s", path, exc)
	if not sections:
		logger.info("No exploitation evidence to assemble")
		return None
	report = deliverables / REPORT_FILENAME
	report.parent.mkdir(parents=True, exist_ok=True)
	report.write_text("\n\n".join(sections) + "\n", encoding="utf-8")
	logger.info("Assembled %d evidence section(s) into %s", len(sections), report)
	return report


def collect_models(session_document: dict[str, Any]) -> list[str]:
	"""Distinct agent models in first-seen order."""
	agents = session_document.get("metrics", {}).get("agents", {})
	models: list[str] = []
	for agent in agents.values():
		model = agent.get("model")
		if model and model not in models:
			models.append(model)
	return models


def inject_model_metadata(workspace: str | Path, session_document: dict[str, Any]) -> bool:
	"""Insert a `- Model: ...` line after the assessment date line of the report.

	Appends the line when the report has no date line. Returns True when the
	report was changed.
	"""
	report = Path(workspace) / DELIVERABLES_DIR / REPORT_FILENAME
	models = collect_models(session_document)
	if not models or not report.is_file():
		return False
	model_line = f"- Model: {', '.join(models)}"
	lines = report.read_text(encoding="utf-8", errors="replace").splitlines()
	if model_line in lines:
		return False
	for i, line in enumerate(lines):
		if line.startswith(_DATE_MARKER):
			lines.insert(i + 1, model_line)
			break
	else:
		lines.append(model_line)
	report.write_text("\n".join(lines) + "\n", encoding="utf-8")
	return True
