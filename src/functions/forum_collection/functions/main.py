"""Cloud Function entry point for forum collection."""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import flask
import functions_framework

# Ensure project root is available on import path
project_root = Path(__file__).parent.parent.parent.parent.parent.absolute()
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.shared.utils.config_validator import ConfigurationError
from src.shared.utils.env import load_env
from src.shared.utils.logging import setup_logging

from src.functions.forum_collection.core.errors import ForumCollectionError
from src.functions.forum_collection.core.orchestration.config_loader import build_collection_config
from src.functions.forum_collection.core.orchestration.service import CollectionService, build_service

load_env()
setup_logging(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

ACTIONS = ("tick", "manual", "status", "cancel", "health")

_service: Optional[CollectionService] = None


def _get_service(overrides: Dict[str, Any]) -> CollectionService:
    """Reuse one service per instance so the monitor and registry survive between calls."""
    global _service
    if _service is None or any(value is not None for value in overrides.values()):
        _service = build_service(build_collection_config(overrides))
    return _service


def collection_handler(request: flask.Request) -> flask.Response:
    """HTTP handler dispatching operator actions to the collection service."""

    if request.method == "OPTIONS":
        return _cors_response({}, status=204)

    if request.method != "POST":
        return _error_response("Method not allowed. Use POST.", status=405)

    payload = request.get_json(silent=True) or {}
    action = payload.get("action", "tick")
    logger.info("Received collection request action=%s keys=%s", action, list(payload.keys()))

    if action not in ACTIONS:
        return _error_response(f"Unknown action '{action}'. Use one of: {', '.join(ACTIONS)}", status=400)

    overrides = {
        "dry_run": payload.get("dry_run"),
        "concurrency": payload.get("concurrency"),
        "max_chunk_size": payload.get("max_chunk_size"),
    }

    try:
        service = _get_service(overrides)
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return _error_response(f"Configuration error: {exc}", status=500)

    try:
        if action == "tick":
            body = service.tick()
        elif action == "manual":
            source = payload.get("source")
            if not source:
                return _error_response("'source' is required for manual jobs", status=400)
            item_ids = payload.get("item_ids") or []
            if not isinstance(item_ids, list):
                return _error_response("'item_ids' must be an array of post ids", status=400)
            job = service.request_manual(source, item_ids=item_ids, keyword=payload.get("keyword"))
            body = {"requested": job.to_dict(), **service.tick()}
        elif action == "status":
            body = service.status(payload.get("job_id"))
        elif action == "cancel":
            job_id = payload.get("job_id")
            if not job_id:
                return _error_response("'job_id' is required to cancel", status=400)
            body = {"job_id": job_id, "cancel_requested": service.cancel(job_id)}
        else:
            body = service.health()
    except ForumCollectionError as exc:
        logger.exception("Collection action %s failed", action)
        return _error_response(str(exc), status=500)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected error during collection action %s", action)
        return _error_response(f"Unexpected error: {exc}", status=500)

    body["status"] = body.get("status", "success")
    return _cors_response(body)


def health_check_handler(request: flask.Request) -> flask.Response:
    """Health check endpoint returning module status."""

    return _cors_response({"status": "healthy", "module": "forum_collection"})


def _cors_response(body: Dict[str, Any] | Iterable[Any], status: int = 200) -> flask.Response:
    response = flask.make_response(json.dumps(body, ensure_ascii=False, default=str), status)
    headers = response.headers
    headers["Content-Type"] = "application/json"
    headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Allow-Methods"] = "POST,OPTIONS"
    headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization,X-API-Key"
    return response


def _error_response(message: str, status: int) -> flask.Response:
    return _cors_response({"status": "error", "message": message}, status=status)


@functions_framework.http
def run_collection(request: flask.Request):
    return collection_handler(request)


@functions_framework.http
def health_check(request: flask.Request):
    return health_check_handler(request)
