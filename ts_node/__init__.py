"""
Sensor time-series node

This package implements ingestion, storage and query of streaming
instrument measurements:
- Point store (SQLite, WAL) with an instrument/variable catalog
- Ingest writer with itemized rejections
- Window, tail, last and multi-variable queries
- Retention pruning on a background loop
- Stateless live feed for polling clients
"""

__version__ = "0.1.0"
