"""Read-only FastAPI app over the audit directory: sessions, metrics and progress."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from pipeline_control.orchestrator import load_progress
from pipeline_control.session_store import SESSION_FILENAME, load_session_document

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def _check_session_id(session_id: str) -> None:
	if not _SESSION_ID_RE.match(session_id) or session_id in (".", ".."):
		raise HTTPException(status_code=400, detail="Invalid session id")


def create_app(audit_root: str | Path) -> FastAPI:
	"""Factory: build the progress API for sessions under `audit_root`."""
	root = Path(audit_root)
	app = FastAPI(title="Pipeline Control")

	@app.get("/health")
	async def health() -> dict:
		return {"status": "ok"}

	@app.get("/sessions")
	async def list_sessions() -> JSONResponse:
		sessions = []
		if root.is_dir():
			for path in sorted(root.glob(f"*/{SESSION_FILENAME}")):
				doc = load_session_document(root, path.parent.name)
				if doc is None:
					continue
				metrics = doc.get("metrics", {})
				sessions.append({
					**doc.get("session", {}),
					"totalCostUsd": metrics.get("totalCostUsd", 0.0),
					"totalDurationMs": metrics.get("totalDurationMs", 0),
				})
		sessions.sort(key=lambda s: s.get("createdAt", ""), reverse=True)
		return JSONResponse({"sessions": sessions, "count": len(sessions)})

	@app.get("/sessions/{session_id}")
	async def get_session(session_id: str) -> JSONResponse:
		_check_session_id(session_id)
		doc = load_session_document(root, session_id)
		if doc is None:
			raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
		return JSONResponse(doc)

	@app.get("/sessions/{session_id}/progress")
	async def get_progress(session_id: str) -> JSONResponse:
		_check_session_id(session_id)
		progress = load_progress(root, session_id)
		if progress is None:
			raise HTTPException(status_code=404, detail=f"No progress recorded for session: {session_id}")
		return JSONResponse(progress)

	return app
