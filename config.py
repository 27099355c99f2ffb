# config.py
import copy
import logging
import os

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "labsync.yaml"

DEFAULTS = {
    "remote": {
        "baseUrl": "http://localhost:8082",
        "headers": {"Accept": "application/json"},
        "timeout": 5,
        "deadline": 15,
        "batchStrategies": [
            {"endpoint": "/api/labtests/batch", "shape": "list"},
            {"endpoint": "/api/visits/{visit_id}/labtests/batch", "shape": "wrapped"},
        ],
        "recordStrategies": [
            {"endpoint": "/api/labtests", "shape": "record"},
        ],
        "readEndpoints": [
            "/api/labtests/visit/{visit_id}",
        ],
        "retry": {
            "maxAttempts": 5,
            "baseDelay": 0.5,
            "maxDelay": 2.0,
        },
    },
    "queue": {
        "maxSyncAttempts": 5,
        "acceptPartial": False,
        "onConflict": "overwrite",
    },
    "scheduler": {
        "interval": 60,
    },
}


def load_yaml(path):
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _merge(base, override):
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path=None):
    """
    Defaults, overlaid with the YAML file, overlaid with environment variables.
    A missing file is not an error; a malformed one is.
    """
    path = path or os.environ.get("LABSYNC_CONFIG", DEFAULT_CONFIG_PATH)
    cfg = copy.deepcopy(DEFAULTS)

    if os.path.exists(path):
        logger.info(f"Loading labsync config from {path}")
        _merge(cfg, load_yaml(path))
    else:
        logger.info(f"No config at {path}, using defaults")

    base_url = os.environ.get("LABSYNC_BASE_URL")
    if base_url:
        cfg["remote"]["baseUrl"] = base_url

    on_conflict = cfg["queue"]["onConflict"]
    if on_conflict not in ("overwrite", "merge"):
        raise ValueError(f"queue.onConflict must be 'overwrite' or 'merge', got {on_conflict!r}")
    return cfg
