"""
Memory Notes - a persistent store of repository "learning notes".

Notes pair a problem with its solution, carry tags and external links,
and are retrievable through SQLite FTS5 full-text search with BM25 ranking.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("memory-notes")
except PackageNotFoundError:
    __version__ = "0.3.0"
