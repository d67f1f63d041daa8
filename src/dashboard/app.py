"""Flask application for the backup dashboard.

Serves the REST API and WebSocket endpoint:

    GET    /api/status
    GET    /api/backups
    POST   /api/backups
    GET    /api/backups/<filename>/download
    DELETE /api/backups/<filename>
    POST   /api/retention/apply
    GET    /api/config
    PUT    /api/config
    WS     /ws/live
"""

import logging
import os

from flask import Flask, jsonify
from flask_sock import Sock

from src.backup.backup_config import DEFAULT_CONFIG_PATH, load_config
from src.backup.backup_manager import BackupManager
from src.dashboard.api.routes import api, init_routes
from src.dashboard.websocket_handler import WebSocketHandler

logger = logging.getLogger(__name__)


def create_app(
    config_path: str = None,
    backup_manager: BackupManager = None,
    config: dict = None,
) -> Flask:
    """Application factory.

    Accepts a pre-built ``BackupManager`` (for testing) or constructs one
    from the config file.
    """
    cfg_path = config_path or DEFAULT_CONFIG_PATH
    if config is None:
        config = load_config(cfg_path)

    if backup_manager is None:
        backup_manager = BackupManager.from_config(config)

    ws_handler = WebSocketHandler()

    app = Flask(__name__)
    sock = Sock(app)

    init_routes(
        backup_manager=backup_manager,
        config=config,
        config_path=cfg_path,
        ws_handler=ws_handler,
    )
    app.register_blueprint(api)

    # WebSocket: /ws/live
    @sock.route("/ws/live")
    def ws_live(ws):
        ws_handler.register(ws)
        try:
            while True:
                # Keep connection alive; client can send pings
                data = ws.receive(timeout=60)
                if data is None:
                    break
        except Exception:
            logger.debug("WebSocket connection closed")
        finally:
            ws_handler.unregister(ws)

    @app.route("/")
    def index():
        return jsonify({
            "service": "retention-backup",
            "backup_dir": backup_manager.backup_dir,
            "api": "/api/status",
        })

    # Store references for test access
    app.backup_manager = backup_manager
    app.ws_handler = ws_handler

    return app


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Retention Backup - Web Dashboard")
    parser.add_argument(
        "-c", "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to config.json",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        default=5000,
        type=int,
        help="Port to listen on (default: 5000)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    app = create_app(config_path=args.config)
    logger.info("Dashboard starting on http://%s:%d", args.host, args.port)
    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
