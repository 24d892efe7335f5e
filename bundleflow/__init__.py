"""
Bundleflow - Spreadsheet Bundle Pipeline

Drives uploaded spreadsheet bundles through intake, validate/transform and
import stages backed by Postgres (ledger + pgmq) and Supabase Storage.
"""

__version__ = "0.1.0"
