"""
Confession media: metadata decoding, validation and upload.

Stored media metadata has historically been either a JSON string or a JSON
list. decode_media_urls() is the one place that deals with that: everything
downstream only ever sees a list of MediaItem.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Literal

from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage

from .exceptions import TransientStoreError, ValidationError

logger = logging.getLogger(__name__)

MediaKind = Literal['image', 'video']
ALLOWED_CONTENT_PREFIXES = ('image/', 'video/')


@dataclass(frozen=True)
class MediaItem:
    url: str
    type: MediaKind

    def to_dict(self) -> dict:
        return asdict(self)


def decode_media_urls(raw) -> list[MediaItem]:
    """
    Decode stored media metadata into MediaItems.

    Accepts a JSON-encoded string or an already-decoded list. Anything that
    doesn't parse, or isn't a list of {url, type} with a known type, decodes
    to an empty list.
    """
    if raw is None or raw == '':
        return []

    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("Unparseable media_urls, treating as empty")
            return []

    if not isinstance(value, list):
        logger.warning(f"media_urls is {type(value).__name__}, expected list")
        return []

    items = []
    for entry in value:
        if (
            not isinstance(entry, dict)
            or not isinstance(entry.get('url'), str)
            or entry.get('type') not in ('image', 'video')
        ):
            logger.warning("Malformed media_urls entry, treating media as empty")
            return []
        items.append(MediaItem(url=entry['url'], type=entry['type']))
    return items


def media_kind(content_type: str) -> MediaKind:
    return 'image' if content_type.startswith('image/') else 'video'


def validate_uploads(files) -> None:
    """
    Check count, size and type of uploaded files.

    Runs before anything is written anywhere. Raises ValidationError naming
    the first offending file.
    """
    max_files = settings.BOARD_MEDIA_MAX_FILES
    max_bytes = settings.BOARD_MEDIA_MAX_BYTES

    if len(files) > max_files:
        raise ValidationError(
            f"You can upload maximum {max_files} files per confession",
            field='files'
        )

    for upload in files:
        if upload.size > max_bytes:
            raise ValidationError(
                f"{upload.name} is larger than {max_bytes // (1024 * 1024)}MB",
                field='files'
            )
        content_type = getattr(upload, 'content_type', None) or ''
        if not content_type.startswith(ALLOWED_CONTENT_PREFIXES):
            raise ValidationError(
                f"{upload.name} is not an image or video",
                field='files'
            )


class MediaStore(ABC):
    """Abstract interface for the binary object store."""

    @abstractmethod
    def put(self, name: str, data: bytes, content_type: str) -> str:
        """Store bytes under name and return their public URL.

        Raises:
            TransientStoreError: the object store rejected the upload
        """
        ...

    @abstractmethod
    def delete(self, name: str) -> None:
        """Remove an object stored by put(). Missing objects are ignored."""
        ...


class StorageMediaStore(MediaStore):
    """MediaStore over a Django storage backend (default_storage unless given)."""

    def __init__(self, storage=None, prefix: str = 'confession-media'):
        self.storage = storage or default_storage
        self.prefix = prefix
        # storage.save may rename on collision
        self._saved = {}

    def put(self, name: str, data: bytes, content_type: str) -> str:
        path = f"{self.prefix}/{name}"
        try:
            saved_name = self.storage.save(path, ContentFile(data))
            self._saved[name] = saved_name
            return self.storage.url(saved_name)
        except OSError as e:
            logger.error(f"Upload error for {name}: {e}")
            raise TransientStoreError(f"Failed to upload {name}") from e

    def delete(self, name: str) -> None:
        path = self._saved.pop(name, f"{self.prefix}/{name}")
        try:
            self.storage.delete(path)
        except OSError as e:
            logger.error(f"Delete error for {name}: {e}")
            raise TransientStoreError(f"Failed to delete {name}") from e
