"""
Bundleflow - Object Storage

Location-addressed adapter over Supabase Storage; an object's folder is its
coarse processing state.
"""

from .object_store import Location, ObjectStore

__all__ = ["Location", "ObjectStore"]
