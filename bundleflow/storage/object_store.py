"""
Bundleflow - Object Store Adapter

Location-addressed access to the processing container (one Supabase Storage
bucket with one folder per location):

    incoming/ -> processing/ -> importing/ -> completed/ | rejected/
    incoming/ -> archive/          (consumed archive bundles)
    templates/                     (read-only collaborator input)

An object lives in exactly one location. move() copies first and deletes the
source only after the copy succeeded, so a crash between the two leaves a
duplicate (healed on the next move) rather than a lost object. move() is
idempotent: when the source is gone and the destination holds the object, it
reports a no-op instead of failing.
"""

from __future__ import annotations

import logging
import mimetypes
from enum import Enum
from typing import Any, Iterable, Mapping

from bundleflow.core.config import Settings
from bundleflow.core.errors import ObjectNotFoundError, StorageError

logger = logging.getLogger(__name__)

_LIST_PAGE_SIZE = 1000


class Location(str, Enum):
    """Logical storage locations; values match Settings.location_folders keys."""

    INCOMING = "incoming"
    PROCESSING = "processing"
    IMPORTING = "importing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    ARCHIVE = "archive"
    TEMPLATES = "templates"


# Locations a file entry passes through after intake, in pipeline order.
FILE_LOCATIONS = (
    Location.PROCESSING,
    Location.IMPORTING,
    Location.COMPLETED,
    Location.REJECTED,
)


class ObjectStore:
    """
    Adapter over a Supabase Storage bucket.

    Args:
        client: Supabase client (anything exposing `.storage.from_(bucket)`).
        bucket: Bucket that holds every location folder.
        folders: Location value -> folder name.
    """

    def __init__(self, client: Any, bucket: str, folders: Mapping[str, str]):
        self._client = client
        self.bucket = bucket
        self._folders = dict(folders)

    @classmethod
    def from_settings(cls, settings: Settings, client: Any | None = None) -> "ObjectStore":
        if client is None:
            from .supabase_client import create_supabase_client

            client = create_supabase_client(settings)
        return cls(client, settings.STORAGE_BUCKET, settings.location_folders)

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def _bucket(self) -> Any:
        return self._client.storage.from_(self.bucket)

    def folder(self, location: Location) -> str:
        return self._folders.get(location.value, location.value)

    def path(self, location: Location, name: str) -> str:
        return f"{self.folder(location)}/{name}"

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def exists(self, location: Location, name: str) -> bool:
        try:
            items = self._bucket().list(
                self.folder(location), {"search": name, "limit": _LIST_PAGE_SIZE}
            )
        except Exception as e:
            raise StorageError(f"Listing {self.folder(location)}/ failed: {e}") from e
        return any(item.get("name") == name for item in items or [])

    def list(self, location: Location) -> list[str]:
        """Object names directly inside a location (folders excluded)."""
        try:
            items = self._bucket().list(self.folder(location), {"limit": _LIST_PAGE_SIZE})
        except Exception as e:
            raise StorageError(f"Listing {self.folder(location)}/ failed: {e}") from e
        # Supabase reports sub-folders as items without an id
        return sorted(item["name"] for item in items or [] if item.get("id") and item.get("name"))

    def open(self, location: Location, name: str) -> bytes:
        """Download an object's bytes."""
        path = self.path(location, name)
        try:
            return self._bucket().download(path)
        except Exception as e:
            if not self.exists(location, name):
                raise ObjectNotFoundError(location.value, name) from e
            raise StorageError(f"Download of {path} failed: {e}") from e

    def open_optional(self, location: Location, name: str) -> bytes | None:
        """Download an object, or None when it is absent."""
        try:
            return self.open(location, name)
        except ObjectNotFoundError:
            return None

    def locate(self, name: str, locations: Iterable[Location] = FILE_LOCATIONS) -> Location | None:
        """First location (in the given order) that currently holds `name`."""
        for location in locations:
            if self.exists(location, name):
                return location
        return None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def put(self, location: Location, name: str, data: bytes) -> None:
        """Upload bytes, overwriting an existing object of the same name."""
        path = self.path(location, name)
        content_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        try:
            self._bucket().upload(
                path,
                data,
                file_options={"content-type": content_type, "upsert": "true"},
            )
        except Exception as e:
            raise StorageError(f"Upload of {path} failed: {e}") from e
        logger.debug("Stored %s (%d bytes)", path, len(data))

    def copy(self, source: Location, name: str, destination: Location) -> None:
        """Copy an object between locations, overwriting the destination."""
        src_path = self.path(source, name)
        dst_path = self.path(destination, name)
        if self.exists(destination, name):
            # Storage copy refuses to overwrite; re-upload the source bytes instead.
            self.put(destination, name, self.open(source, name))
            return
        try:
            self._bucket().copy(src_path, dst_path)
        except Exception as e:
            raise StorageError(f"Copy {src_path} -> {dst_path} failed: {e}") from e

    def remove(self, location: Location, name: str) -> None:
        path = self.path(location, name)
        try:
            self._bucket().remove([path])
        except Exception as e:
            raise StorageError(f"Delete of {path} failed: {e}") from e

    def discard(self, name: str, locations: Iterable[Location]) -> list[Location]:
        """Remove `name` from every given location that holds it; returns those locations."""
        removed = [location for location in locations if self.exists(location, name)]
        for location in removed:
            self.remove(location, name)
        if removed:
            logger.info(
                "Discarded stale copies of %s from %s",
                name,
                ", ".join(f"{self.folder(location)}/" for location in removed),
            )
        return removed

    def move(self, source: Location, name: str, destination: Location) -> bool:
        """
        Relocate an object: copy to destination, then delete the source.

        Returns:
            True if an object was moved, False if it was already at the
            destination (redelivery after a completed move).

        Raises:
            ObjectNotFoundError: neither location holds the object.
        """
        if source is destination:
            return False

        if not self.exists(source, name):
            if self.exists(destination, name):
                logger.info(
                    "Object %s already in %s/; move is a no-op",
                    name,
                    self.folder(destination),
                )
                return False
            raise ObjectNotFoundError(source.value, name)

        self.copy(source, name, destination)
        self.remove(source, name)
        logger.info(
            "Moved %s: %s/ -> %s/",
            name,
            self.folder(source),
            self.folder(destination),
        )
        return True
