"""Backup system configuration."""

import copy
import json
import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DEFAULT_CONFIG_PATH = str(PROJECT_ROOT / "config" / "config.json")

# Default backup location (hidden directory)
DEFAULT_BACKUP_DIR = os.path.join(
    os.path.expanduser("~"), ".retention_backup", "db-backups"
)

# Permissions: owner-only on the backup directory and its artifacts
BACKUP_DIR_MODE = 0o700
BACKUP_FILE_MODE = 0o600

DUMP_TIMEOUT_SECONDS = 3600
GPG_TIMEOUT_SECONDS = 300

# Name of the copy written by install folder sync
INSTALL_FILENAME = "database.sql.gz"

DEFAULT_CONFIG = {
    "backup": {
        "directory": DEFAULT_BACKUP_DIR,
        "dump_command": [],
        "label": None,
        "repo_dir": None,
        "timeout": DUMP_TIMEOUT_SECONDS,
        "install_folder_sync": False,
        "install_folder_path": "install",
    },
    "retention": {
        "floor_hours": 24,
        "grace_days": 3,
        "tiers": {
            "monthly": [25, 30],
            "6month": [150, 180],
            "yearly": [330, 365],
        },
    },
    "state": {
        "path": os.path.join(
            os.path.expanduser("~"), ".retention_backup", "state.db"
        ),
        "namespace": "retention_backup",
    },
    "encryption": {
        "enabled": False,
        "gpg_recipient": "",
        "gpg_binary": "gpg",
    },
    "notifications": {
        "enabled": False,
        "recipients": "",
        "from_address": "",
        "site_name": "Database",
        "smtp_host": "localhost",
        "smtp_port": 587,
        "smtp_use_tls": True,
        "smtp_username": None,
        "smtp_password": None,
    },
    "watcher": {
        "debounce_seconds": 5.0,
    },
    "dashboard": {
        "host": "127.0.0.1",
        "port": 5000,
    },
}


def deep_merge(base: dict, override: dict):
    """Recursively merge override into base in-place."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            deep_merge(base[key], value)
        else:
            base[key] = value


def load_config(config_path: str | None = None) -> dict:
    """Read the JSON config and lay it over ``DEFAULT_CONFIG``.

    A missing file is not an error; defaults apply.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    path = Path(config_path or DEFAULT_CONFIG_PATH)
    if path.is_file():
        with open(path) as f:
            deep_merge(config, json.load(f))
    return config


def resolve_path(path_str: str) -> str:
    return str(Path(os.path.expanduser(os.path.expandvars(path_str))).resolve())
