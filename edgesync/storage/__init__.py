"""
Storage Layer

- schema.py - SQLAlchemy Core table definitions
- local_db.py - Edge database (config mirror, readings, sync log)
- remote_db.py - Read-only remote master database
"""

from .local_db import LocalDatabase
from .remote_db import RemoteDatabase

__all__ = ["LocalDatabase", "RemoteDatabase"]
