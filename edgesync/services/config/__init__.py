"""
Config Sync - Remote to Local Configuration

Responsibilities:
- Reconcile tenant, meter and device-register rows from the remote master
- Apply changes to the local mirror one phase at a time
- Reload the in-memory cache only when something changed
"""

from .cache import CacheSnapshot, LocalCacheManager
from .differ import ENTITY_SPECS, EntitySpec, EntitySync, diff_entities
from .orchestrator import ConfigSyncOrchestrator, CycleResult, SyncState

__all__ = [
    "CacheSnapshot",
    "LocalCacheManager",
    "ENTITY_SPECS",
    "EntitySpec",
    "EntitySync",
    "diff_entities",
    "ConfigSyncOrchestrator",
    "CycleResult",
    "SyncState",
]
