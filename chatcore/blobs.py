"""Opaque media blobs referenced by messages through a URL.

Upload kinds map to the message types that can carry media; the blob itself
is stored as-is and served back with its recorded content type.
"""
from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.exc import OperationalError

from .database import make_session_factory, session_scope
from .domain import new_id, utcnow
from .errors import NotFoundError, TransientStoreError, ValidationError
from .models import Blob


UPLOAD_KINDS = {
    "image": "image/",
    "video": "video/",
    "audio": "audio/",
    "voice": "audio/",
    "file": "",
    "gif": "image/",
}


@dataclass
class StoredBlob:
    id: str
    data: bytes
    content_type: Optional[str]
    filename: Optional[str]
    size_bytes: int
    created_at: datetime


def check_upload(kind: str, data: bytes, content_type: Optional[str], max_bytes: int) -> None:
    if kind not in UPLOAD_KINDS:
        raise ValidationError(f"Unsupported upload kind {kind!r}")
    if not data:
        raise ValidationError("Empty upload")
    if len(data) > max_bytes:
        raise ValidationError(f"Upload exceeds {max_bytes} bytes")
    prefix = UPLOAD_KINDS[kind]
    if prefix and content_type and not content_type.startswith(prefix):
        raise ValidationError(f"Content type {content_type} does not match {kind}")


class BlobStore:
    def __init__(self, public_base_url: str = "") -> None:
        self.public_base_url = public_base_url.rstrip("/")

    def url_for(self, blob_id: str) -> str:
        return f"{self.public_base_url}/blobs/{blob_id}"

    async def put(self, data: bytes, content_type: Optional[str], filename: Optional[str]) -> StoredBlob:
        raise NotImplementedError

    async def get(self, blob_id: str) -> StoredBlob:
        raise NotImplementedError


class MemoryBlobStore(BlobStore):
    def __init__(self, public_base_url: str = "") -> None:
        super().__init__(public_base_url)
        self._blobs: Dict[str, StoredBlob] = {}

    async def put(self, data, content_type, filename):
        blob = StoredBlob(new_id(), bytes(data), content_type, filename, len(data), utcnow())
        self._blobs[blob.id] = blob
        return copy.copy(blob)

    async def get(self, blob_id):
        blob = self._blobs.get(blob_id)
        if blob is None:
            raise NotFoundError("Blob not found")
        return copy.copy(blob)


class SqlBlobStore(BlobStore):
    def __init__(self, engine, public_base_url: str = "") -> None:
        super().__init__(public_base_url)
        self.SessionLocal = make_session_factory(engine)

    async def _run(self, fn):
        def work():
            try:
                with session_scope(self.SessionLocal) as db:
                    return fn(db)
            except OperationalError as e:
                raise TransientStoreError("Database unavailable") from e

        return await asyncio.to_thread(work)

    async def put(self, data, content_type, filename):
        def op(db):
            row = Blob(
                id=new_id(), data=bytes(data), content_type=content_type, filename=filename,
                size_bytes=len(data), created_at=utcnow(),
            )
            db.add(row)
            db.flush()
            return StoredBlob(row.id, row.data, row.content_type, row.filename, row.size_bytes, row.created_at)

        return await self._run(op)

    async def get(self, blob_id):
        def op(db):
            row = db.get(Blob, blob_id)
            if row is None:
                return None
            return StoredBlob(row.id, row.data, row.content_type, row.filename, row.size_bytes, row.created_at)

        blob = await self._run(op)
        if blob is None:
            raise NotFoundError("Blob not found")
        return blob
