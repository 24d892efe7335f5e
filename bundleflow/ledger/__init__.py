"""
Bundleflow - Batch Ledger

Durable record of batches and file entries. The only state shared between
pipeline workers.
"""

from .models import Batch, FileEntry, FileOutcome, TerminalMark
from .store import BatchLedger

__all__ = ["Batch", "BatchLedger", "FileEntry", "FileOutcome", "TerminalMark"]
