"""
Configuration loading for the Lifecycle Engine.

Settings come from built-in defaults, optionally overlaid by a JSON or YAML
file whose path is passed explicitly or taken from LIFECYCLE_ENGINE_CONFIG.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .audit import AuditLogger
from .connectors import get_adapter
from .engine import TaskCatalog, WorkflowInstanceStore, WorkflowOrchestrator
from .models import RetryPolicy

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "LIFECYCLE_ENGINE_CONFIG"

DEFAULT_CONFIG: Dict[str, Any] = {
    "mock_mode": True,
    "state_dir": "data/workflows",
    "audit_dir": "audit_logs",
    "catalog_file": None,
    "log_level": "INFO",
    "max_workers": 4,
    "retry": {
        "max_attempts": 3,
        "base_delay_seconds": 2.0,
        "max_delay_seconds": 60.0,
        "call_timeout_seconds": 30.0,
    },
    "graph": {
        "tenant_id": None,
        "client_id": None,
        "client_secret": None,
        "notification_sender": None,
        "default_archive_destination": None,
    },
    "mock_users": [],
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively overlay ``override`` on ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load engine configuration.

    Args:
        path: JSON or YAML config file. Falls back to the
              LIFECYCLE_ENGINE_CONFIG environment variable, then to defaults.

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If an explicitly named file does not exist
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return copy.deepcopy(DEFAULT_CONFIG)

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, encoding="utf-8") as f:
        if config_path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)

    data = data or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")

    logger.info(f"Loaded configuration from {config_path}")
    return _merge(DEFAULT_CONFIG, data)


def build_orchestrator(config: Optional[Dict[str, Any]] = None) -> WorkflowOrchestrator:
    """
    Wire the adapter, store, audit logger and catalog into an orchestrator.

    Args:
        config: Configuration from load_config (defaults if omitted)

    Returns:
        Configured WorkflowOrchestrator
    """
    config = config if config is not None else load_config()

    return WorkflowOrchestrator(
        adapter=get_adapter(config),
        store=WorkflowInstanceStore(config.get("state_dir")),
        audit_logger=AuditLogger(config.get("audit_dir")),
        catalog=TaskCatalog(config.get("catalog_file")),
        retry_policy=RetryPolicy(**config.get("retry", {})),
        max_workers=config.get("max_workers", 4),
    )
