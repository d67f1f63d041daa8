"""API route handlers for the backup dashboard.

    GET    /api/status                       - Directory summary
    GET    /api/backups                      - List backups
    POST   /api/backups                      - Create a backup and apply retention
    GET    /api/backups/<filename>/download  - Download a backup
    DELETE /api/backups/<filename>           - Delete an unprotected backup
    POST   /api/retention/apply              - Run a retention pass
    GET    /api/config                       - Get configuration
    PUT    /api/config                       - Update configuration
"""

import json
import logging
from datetime import datetime
from pathlib import Path

from flask import Blueprint, jsonify, request, send_file

from src.backup.backup_config import deep_merge
from src.backup.notifier import parse_recipients
from src.retention.catalog import CatalogError

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")

# These are set by app.py at init time via init_routes()
_backup_manager = None
_config = None
_config_path = None
_ws_handler = None

# Secrets never returned by GET /api/config
_REDACTED_KEYS = {("notifications", "smtp_password")}


def init_routes(backup_manager, config: dict, config_path: str, ws_handler):
    """Wire up shared application state into the route handlers."""
    global _backup_manager, _config, _config_path, _ws_handler
    _backup_manager = backup_manager
    _config = config
    _config_path = config_path
    _ws_handler = ws_handler


def _broadcast(event_type: str, data: dict):
    if _ws_handler:
        _ws_handler.broadcast(event_type, data)


# ------------------------------------------------------------------
# GET /api/status
# ------------------------------------------------------------------

@api.route("/status", methods=["GET"])
def get_status():
    """Backup count, total size, labelled backups and disk usage."""
    if not _backup_manager:
        return jsonify({"error": "Backup manager not available"}), 503

    try:
        status = _backup_manager.status()
    except CatalogError as exc:
        logger.exception("Cannot read backup directory")
        return jsonify({"error": str(exc)}), 500

    status["timestamp"] = datetime.now().isoformat()
    status["websocket_clients"] = _ws_handler.client_count if _ws_handler else 0
    return jsonify(status)


# ------------------------------------------------------------------
# GET /api/backups
# ------------------------------------------------------------------

@api.route("/backups", methods=["GET"])
def get_backups():
    """List backups, newest first, with optional status filter."""
    status = request.args.get("status")
    limit = request.args.get("limit", 100, type=int)

    if not _backup_manager:
        return jsonify({"backups": [], "total": 0})

    try:
        backups = _backup_manager.list_backups()
    except CatalogError as exc:
        logger.exception("Cannot read backup directory")
        return jsonify({"error": str(exc)}), 500

    if status:
        backups = [b for b in backups if b["status"] == status.upper()]
    return jsonify({"backups": backups[:limit], "total": len(backups)})


# ------------------------------------------------------------------
# POST /api/backups
# ------------------------------------------------------------------

@api.route("/backups", methods=["POST"])
def create_backup():
    """Create a backup now, then apply retention."""
    if not _backup_manager:
        return jsonify({"error": "Backup manager not available"}), 503

    run = _backup_manager.create_backup_and_apply_retention()
    if not run.success:
        return jsonify(run.to_dict()), 500

    _broadcast("backup_created", run.to_dict())
    return jsonify(run.to_dict()), 201


# ------------------------------------------------------------------
# GET /api/backups/<filename>/download
# ------------------------------------------------------------------

@api.route("/backups/<filename>/download", methods=["GET"])
def download_backup(filename):
    if not _backup_manager:
        return jsonify({"error": "Backup manager not available"}), 503

    path = _backup_manager.resolve_backup(filename)
    if path is None:
        return jsonify({"error": "Backup file not found"}), 404

    logger.debug("Initiating download of backup: %s", filename)
    return send_file(path, as_attachment=True, download_name=filename)


# ------------------------------------------------------------------
# DELETE /api/backups/<filename>
# ------------------------------------------------------------------

@api.route("/backups/<filename>", methods=["DELETE"])
def delete_backup(filename):
    """Delete an unlabelled backup. Labelled backups are refused."""
    if not _backup_manager:
        return jsonify({"error": "Backup manager not available"}), 503

    result = _backup_manager.delete_backup(filename)
    if not result.success:
        if result.protected:
            code = 403
        elif result.error == "Backup file not found":
            code = 404
        else:
            code = 400
        return jsonify({"filename": filename, "error": result.error}), code

    _broadcast("backup_deleted", {"filename": filename, "size": result.size})
    return jsonify({"filename": filename, "deleted": True, "size": result.size})


# ------------------------------------------------------------------
# POST /api/retention/apply
# ------------------------------------------------------------------

@api.route("/retention/apply", methods=["POST"])
def apply_retention():
    if not _backup_manager:
        return jsonify({"error": "Backup manager not available"}), 503

    result = _backup_manager.apply_retention()
    payload = result.to_dict()
    if not result.success:
        return jsonify(payload), 500

    _broadcast("retention_applied", payload)
    return jsonify(payload)


# ------------------------------------------------------------------
# GET /api/config
# ------------------------------------------------------------------

@api.route("/config", methods=["GET"])
def get_config():
    """Return current configuration without secrets."""
    cfg = json.loads(json.dumps(_config or {}))
    for section, key in _REDACTED_KEYS:
        if cfg.get(section, {}).get(key):
            cfg[section][key] = "********"
    return jsonify(cfg)


# ------------------------------------------------------------------
# PUT /api/config
# ------------------------------------------------------------------

@api.route("/config", methods=["PUT"])
def update_config():
    """Merge provided keys into the config and persist it.

    Newly added notification recipients get a welcome email.
    """
    data = request.get_json(silent=True) or {}
    if not data:
        return jsonify({"error": "No data provided"}), 400

    if _config is None:
        return jsonify({"error": "Configuration not loaded"}), 503

    old_recipients = set(parse_recipients(
        _config.get("notifications", {}).get("recipients")
    ))
    deep_merge(_config, data)
    new_recipients = [
        r for r in parse_recipients(_config.get("notifications", {}).get("recipients"))
        if r not in old_recipients
    ]

    if _config_path:
        try:
            Path(_config_path).write_text(json.dumps(_config, indent=4))
        except OSError as exc:
            return jsonify({"error": f"Failed to save: {exc}"}), 500

    notifier = _backup_manager.notifier if _backup_manager else None
    if notifier is not None and "notifications" in data:
        notifier.recipients = parse_recipients(_config["notifications"].get("recipients"))
        if new_recipients:
            result = notifier.notify_new_recipients(new_recipients)
            if result.failed:
                logger.warning("Welcome email failed for: %s", ", ".join(result.failed))

    _broadcast("config_updated", {"sections": sorted(data)})
    return get_config()
