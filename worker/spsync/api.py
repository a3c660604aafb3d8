from http import HTTPStatus
from threading import Thread

from flask import Flask, g, jsonify, request

from spsync import db, scheduler
from spsync.auth import require_internal_token
from spsync.response import DocRequest, parse_http_date
from spsync.runtime_logger import emit


def _status_phrase(code: int) -> str:
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return "Unknown Status"


def _response_error_summary(response) -> str:
    payload = response.get_json(silent=True)
    if isinstance(payload, dict):
        if payload.get("error"):
            return str(payload.get("error"))
        if payload.get("message"):
            return str(payload.get("message"))
    body = response.get_data(as_text=True) or ""
    body = body.replace("\n", " ").replace("\r", " ").strip()
    if not body:
        return "unspecified_error"
    if len(body) > 220:
        return body[:217] + "..."
    return body


def _run_crawl_in_background(crawl_type: str):
    try:
        scheduler.run_crawl_once(crawl_type, trigger="run_now")
    except Exception as exc:
        emit("ERROR", "FLASK_API", f"Run-now crawl failed: crawl_type={crawl_type} error={exc}")


def create_app(connector=None):
    app = Flask(__name__)

    @app.before_request
    def log_request_start():
        g._log_method = request.method
        g._log_path = request.path
        emit("INFO", "FLASK_API", f"Request received: {request.method} {request.path}")

    @app.after_request
    def log_request_end(response):
        method = getattr(g, "_log_method", request.method)
        path = getattr(g, "_log_path", request.path)
        status = response.status_code
        phrase = _status_phrase(status)
        if 200 <= status < 300:
            emit("INFO", "FLASK_API", f"Response sent: {status} {phrase} for {method} {path}")
        else:
            error_summary = _response_error_summary(response)
            level = "WARN" if status < 500 else "ERROR"
            emit(
                level,
                "FLASK_API",
                f"Response sent: {status} {phrase} for {method} {path}; error={error_summary}",
            )
        return response

    @app.teardown_request
    def log_request_exception(exc):
        if exc is None:
            return
        method = getattr(g, "_log_method", "UNKNOWN")
        path = getattr(g, "_log_path", "UNKNOWN")
        text = str(exc).replace("\n", " ").replace("\r", " ").strip()
        if len(text) > 220:
            text = text[:217] + "..."
        emit("ERROR", "FLASK_API", f"Unhandled exception during {method} {path}: error={text}")

    @app.get("/health")
    @require_internal_token
    def health():
        db_ok = None
        if db.is_configured():
            try:
                db.fetch_one("SELECT 1 AS ok")
                db_ok = True
            except Exception:
                db_ok = False
        status = scheduler.get_scheduler_status()
        return jsonify(
            {
                "ok": db_ok is not False and connector is not None,
                "db": db_ok,
                "scheduler": status,
            }
        )

    @app.get("/crawl/status")
    @require_internal_token
    def crawl_status():
        runs = []
        if db.is_configured():
            runs = db.fetch_all(
                """
                SELECT run_id, crawl_type, started_at, finished_at, status, error
                FROM crawl_runs
                ORDER BY started_at DESC NULLS LAST, run_id DESC
                LIMIT 20
                """
            )
        cursors = {}
        permitted_hosts = []
        if connector is not None:
            store = connector.tracker.store
            cursors = {scope_id: store.get(scope_id) for scope_id in sorted(store.scope_ids())}
            permitted_hosts = connector.auth.permitted_hosts()
        return jsonify(
            {
                "scheduler": scheduler.get_scheduler_status(),
                "runs": runs,
                "cursors": cursors,
                "permitted_hosts": permitted_hosts,
            }
        )

    @app.post("/crawl/run-now")
    @require_internal_token
    def run_now():
        body = request.get_json(silent=True) or {}
        crawl_type = body.get("crawl_type")
        if not crawl_type:
            return jsonify({"error": "crawl_type_required"}), 400
        if crawl_type not in scheduler.CRAWL_TYPES:
            return jsonify({"error": "unknown_crawl_type"}), 400
        if connector is None:
            return jsonify({"error": "connector_not_initialized"}), 503

        thread = Thread(target=_run_crawl_in_background, args=(crawl_type,))
        thread.daemon = True
        thread.start()

        return jsonify({"status": "queued", "crawl_type": crawl_type}), 202

    @app.post("/crawl/cancel")
    @require_internal_token
    def cancel():
        if connector is None:
            return jsonify({"error": "connector_not_initialized"}), 503
        connector.cancel()
        return jsonify({"status": "cancel_requested"}), 202

    @app.get("/docs/content")
    @require_internal_token
    def doc_content():
        doc_id = request.args.get("doc_id")
        if doc_id is None:
            return jsonify({"error": "doc_id_required"}), 400
        if connector is None:
            return jsonify({"error": "connector_not_initialized"}), 503

        doc_request = DocRequest(doc_id, parse_http_date(request.headers.get("If-Modified-Since")))
        response = connector.get_doc_content(doc_request)
        payload = {"doc_id": doc_id, **response.to_dict()}
        if response.not_found:
            return jsonify({"error": "not_found", **payload}), 404
        return jsonify(payload)

    return app
