"""
EdgeSync - Edge Node Meter Data Synchronization

Keeps an edge node's configuration mirror in step with the remote master
database, persists protocol readings in bounded batches, and uploads
them to the remote API on a schedule.
"""

__version__ = "1.0.0"
