"""
Cabinet – watch imageboards and archive what matches.

Supports:
  • Query-driven watchers (text / regex, title / content, archive search)
  • Manually pinned thread URLs and per-watcher thread exclusions
  • Deduplicated board → thread → post → attachment graph in PostgreSQL
  • Throttled, retrying attachment downloads to disk or S3/MinIO
  • Garbage collection of content no watcher references anymore
"""

__version__ = "0.1.0"
