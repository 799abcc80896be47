"""
Upload - Local Store to Remote API

Responsibilities:
- Select unsynchronized readings oldest-first
- Post them in batches with the tenant's API key
- Mark synchronized on success, count retries on failure
"""

from .client import RemoteApiClient, UploadResponse
from .scheduler import UploadOutcome, UploadScheduler

__all__ = ["RemoteApiClient", "UploadResponse", "UploadOutcome", "UploadScheduler"]
