"""Durable side storage (change history, JSONL backups)."""

from .history_db import HistoryDB
from .jsonl import read_jsonl, write_jsonl

__all__ = ["HistoryDB", "read_jsonl", "write_jsonl"]
