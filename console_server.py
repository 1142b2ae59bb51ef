"""
Flask endpoints for the pricing console.

The console UI pulls a snapshot, posts its in-memory edits to get priced rows
back, and posts the same edits to /api/admin/console/sync to push them to
ERPNext. /api/erp/batch-sync is the batch endpoint the sync controller talks
to when CONSOLE_BATCH_URL points at this server.
"""
import logging
import threading
from typing import Any, Dict, Optional, Tuple

from flask import Flask, jsonify, request

from console_config import ConsoleConfig
from console_rows import WorkingSet, build_change_summary, sync_eligibility
from erp_batch import ERPBatchClient, run_batch
from notifier import make_notifier
from snapshot_source import PullRateLimited, SnapshotMissing, SnapshotStore, is_stale, make_snapshot_source
from sync_controller import SyncController, make_endpoint


def _apply_working(ws: WorkingSet, working: Any) -> Optional[str]:
    """Load posted edits into the working set; returns an error message on bad input."""
    if working is None:
        return None
    if not isinstance(working, dict):
        return "working must be an object keyed by item_code"
    for code, fields in working.items():
        if not isinstance(fields, dict):
            return f"working[{code}] must be an object"
        for name, value in fields.items():
            try:
                ws.update_cell(code, name, value)
            except ValueError as exc:
                return f"{code}: {exc}"
    return None


def create_app(
    config: Optional[ConsoleConfig] = None,
    snapshot_source=None,
    store: Optional[SnapshotStore] = None,
    controller: Optional[SyncController] = None,
    batch_client: Optional[ERPBatchClient] = None,
) -> Flask:
    config = config or ConsoleConfig.from_env()
    app = Flask(__name__)
    try:
        app.logger.setLevel(getattr(logging, config.log_level, logging.INFO))
    except Exception:
        app.logger.setLevel(logging.INFO)

    store = store or SnapshotStore(config.data_dir, config.pull_cooldown_minutes)
    parts: Dict[str, Any] = {
        "source": snapshot_source,
        "controller": controller,
        "batch_client": batch_client,
    }
    parts_lock = threading.Lock()

    def _source():
        with parts_lock:
            if parts["source"] is None:
                parts["source"] = make_snapshot_source(config)
            return parts["source"]

    def _controller() -> SyncController:
        # one controller per app so its in-flight lock serialises every sync request
        with parts_lock:
            if parts["controller"] is None:
                parts["controller"] = SyncController(make_endpoint(config), make_notifier(config), config)
            return parts["controller"]

    def _batch_client() -> Optional[ERPBatchClient]:
        with parts_lock:
            if parts["batch_client"] is None and config.erp_configured:
                parts["batch_client"] = ERPBatchClient.from_config(config)
            return parts["batch_client"]

    def _load_rows(body: Dict[str, Any]) -> Tuple[Optional[WorkingSet], Optional[Tuple[Any, int]], Dict[str, Any]]:
        try:
            snapshot, meta = store.load()
        except SnapshotMissing as exc:
            return None, (jsonify({"success": False, "message": str(exc), "code": "NO_SNAPSHOT"}), 404), {}
        ws = WorkingSet(snapshot, config.policy)
        error = _apply_working(ws, body.get("working"))
        if error:
            return None, (jsonify({"success": False, "message": error}), 400), meta
        return ws, None, meta

    @app.route("/api/health")
    def health():
        return jsonify({
            "status": "ok",
            "engine_version": config.engine_version,
            "console_version": config.console_version,
        })

    @app.route("/api/admin/console/pull", methods=["POST"])
    def console_pull():
        try:
            items, meta = store.pull(_source())
        except PullRateLimited as exc:
            return jsonify({"success": False, "message": str(exc)}), 429
        except Exception as exc:
            app.logger.exception("Snapshot pull failed")
            return jsonify({"success": False, "message": f"Unable to reach ERP. {exc}"}), 502
        app.logger.info("Pulled %d items into console snapshot", len(items))
        return jsonify({
            "success": True,
            "count": len(items),
            "data": [item.to_dict() for item in items],
            "meta": meta,
        })

    @app.route("/api/admin/console/buying")
    def console_buying():
        try:
            items, meta = store.load()
        except SnapshotMissing as exc:
            return jsonify({"success": False, "message": str(exc), "code": "NO_SNAPSHOT"}), 404
        return jsonify({
            "success": True,
            "count": len(items),
            "data": [item.to_dict() for item in items],
            "meta": meta,
            "stale": is_stale(meta.get("generated_at")),
        })

    @app.route("/api/admin/console/rows", methods=["POST"])
    def console_rows():
        body = request.get_json(silent=True) or {}
        ws, error, meta = _load_rows(body)
        if error:
            return error
        rows = ws.rows()
        return jsonify({
            "success": True,
            "rows": [row.to_dict() for row in rows],
            "eligibility": sync_eligibility(rows).to_dict(),
            "changes": [c.to_payload() for c in build_change_summary(rows)],
            "stale": is_stale(meta.get("generated_at")),
        })

    @app.route("/api/admin/console/sync", methods=["POST"])
    def console_sync():
        body = request.get_json(silent=True) or {}
        ws, error, _meta = _load_rows(body)
        if error:
            return error
        rows = ws.rows()
        eligibility = sync_eligibility(rows)
        if not eligibility.can_sync:
            blocked = [row.to_dict() for row in rows if row.is_modified and not row.validation.ok]
            message = "Nothing to sync" if eligibility.modified_count == 0 else "Fix blocked rows before syncing"
            return jsonify({
                "success": False,
                "message": message,
                "eligibility": eligibility.to_dict(),
                "blocked_rows": blocked,
            }), 409

        reason = body.get("reason")
        if reason is not None and not isinstance(reason, str):
            return jsonify({"success": False, "message": "reason must be a string"}), 400
        try:
            controller = _controller()
        except RuntimeError as exc:
            return jsonify({"success": False, "message": str(exc)}), 500

        result = controller.execute_sync(build_change_summary(rows), reason)
        if result.success:
            try:
                store.mark_pushed(result.sync_id)
            except OSError:
                app.logger.exception("Failed to record push time for sync %s", result.sync_id)
            return jsonify(result.to_dict())
        status = {"input": 400, "busy": 409}.get(result.error_kind, 502)
        return jsonify(result.to_dict()), status

    @app.route("/api/erp/batch-sync", methods=["POST"])
    def erp_batch_sync():
        client = _batch_client()
        if client is None:
            return jsonify({"success": False, "message": "ERPNext not configured"}), 500
        try:
            status, body = run_batch(client, request.get_json(silent=True))
        except Exception as exc:
            app.logger.exception("[BatchSync] Error")
            return jsonify({"success": False, "message": str(exc) or "Internal Server Error"}), 500
        return jsonify(body), status

    @app.route("/api/admin/test-api")
    def test_api():
        client = _batch_client()
        if client is None:
            return jsonify({"success": False, "message": "ERPNext not configured"}), 500
        if client.test_connection():
            return jsonify({"success": True, "message": "ERPNext connection successful"})
        return jsonify({"success": False, "message": "Could not connect to ERPNext"}), 503

    return app
