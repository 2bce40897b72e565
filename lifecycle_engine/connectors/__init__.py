"""
Connectors Package for the Lifecycle Engine.

This package provides the directory adapter interface, the in-memory mock
directory and the Microsoft Graph integration.
"""

from typing import Any, Dict, Optional

from .base_adapter import (
    CREDENTIAL_KEYS,
    AdapterResult,
    DirectoryAdapter,
    GroupAction,
    MockDirectoryAdapter,
    OutcomeKind,
    generate_temporary_password,
)


def get_adapter(config: Optional[Dict[str, Any]] = None) -> DirectoryAdapter:
    """Build the directory adapter selected by the engine configuration."""
    config = config or {}
    if config.get("mock_mode", True):
        return MockDirectoryAdapter(
            {
                "mock_users": config.get("mock_users", []),
                "default_archive_destination": config.get("graph", {}).get(
                    "default_archive_destination"
                ),
            }
        )

    # The Graph SDK stack is only imported when a real tenant is targeted
    from .graph_adapter import GraphDirectoryAdapter

    return GraphDirectoryAdapter(config.get("graph", {}))


__all__ = [
    "CREDENTIAL_KEYS",
    "AdapterResult",
    "DirectoryAdapter",
    "GroupAction",
    "MockDirectoryAdapter",
    "OutcomeKind",
    "generate_temporary_password",
    "get_adapter",
]
