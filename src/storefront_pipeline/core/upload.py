"""Upload filter stage.

Accepts at most one file under the configured form field. Files whose
declared content type is not on the allow-list are dropped without an
error; the context records the rejection so handlers can tell it apart
from "no file was submitted". An accepted file is removed again if the
request ends in an error.
"""

import logging
import re
import secrets
import time
from dataclasses import replace
from functools import partial
from pathlib import Path, PurePosixPath
from typing import Any, Protocol

from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from storefront_pipeline.config import PipelineSettings
from storefront_pipeline.core.context import (
    RequestContext,
    UploadedFile,
    UploadResult,
    UploadStatus,
)
from storefront_pipeline.core.middleware import Handler, Stage
from storefront_pipeline.exceptions import UploadWriteFailure

logger = logging.getLogger(__name__)

# Retries after an exclusive-create collision before giving up
MAX_NAME_ATTEMPTS = 3

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class FileStorage(Protocol):
    """Filesystem collaborator for accepted uploads."""

    async def write(self, destination: Path, data: bytes) -> None:
        """Create ``destination`` with ``data``.

        Raises:
            FileExistsError: If ``destination`` already exists.
            OSError: For any other write failure.
        """
        ...

    async def delete(self, destination: Path) -> None:
        """Remove a previously written upload. A missing file is not an error."""
        ...


class DiskFileStorage:
    """Writes uploads to the local filesystem, never overwriting a file."""

    async def write(self, destination: Path, data: bytes) -> None:
        await run_in_threadpool(self._write_exclusive, destination, data)

    @staticmethod
    def _write_exclusive(destination: Path, data: bytes) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with open(destination, "xb") as fh:
            fh.write(data)

    async def delete(self, destination: Path) -> None:
        await run_in_threadpool(destination.unlink, missing_ok=True)


def sanitize_filename(original_name: str) -> str:
    """Reduce a client-supplied filename to a safe base name.

    Examples:
        "../../etc/passwd" -> "passwd"
        "C:\\photos\\my cat.png" -> "my_cat.png"
        "" -> "upload"
    """
    base = PurePosixPath(original_name.replace("\\", "/")).name
    base = _UNSAFE_CHARS.sub("_", base).strip("._")
    return base or "upload"


def generate_storage_name(original_name: str) -> str:
    """Return a storage name unique across concurrent uploads of the same file."""
    return f"{time.time_ns()}-{secrets.token_hex(4)}-{sanitize_filename(original_name)}"


def declared_type(upload: UploadFile) -> str:
    return (upload.content_type or "").split(";", 1)[0].strip().lower()


def upload_filter(storage: FileStorage, settings: PipelineSettings) -> Stage:
    """Create the upload filter stage.

    Args:
        storage: Filesystem collaborator used to store accepted files.
        settings: Supplies the field name, allow-list and destination.

    Returns:
        An async stage that sets ``ctx.upload``.

    Raises:
        UploadWriteFailure: From the returned stage, when an accepted file
            cannot be stored.
    """
    field_name = settings.upload_field_name
    allowed = frozenset(settings.allowed_upload_types)
    destination_dir = Path(settings.upload_dir)

    async def filter_upload(ctx: RequestContext, call_next: Handler) -> Any:
        files = [
            value
            for value in ctx.form.getlist(field_name)
            if isinstance(value, UploadFile) and value.filename
        ]
        if not files:
            return await call_next(ctx)

        if len(files) > 1:
            logger.warning(
                "Ignoring extra files in upload field",
                extra={"field": field_name, "ignored": len(files) - 1},
            )

        upload = files[0]
        content_type = declared_type(upload)
        if content_type not in allowed:
            logger.info(
                "Rejected upload with disallowed content type",
                extra={"field": field_name, "content_type": content_type},
            )
            result = UploadResult(status=UploadStatus.REJECTED, declared_type=content_type)
            return await call_next(replace(ctx, upload=result))

        stored = await _store(storage, destination_dir, upload, content_type)
        ctx.on_failure(partial(storage.delete, stored.path))
        logger.debug(
            "Stored upload",
            extra={"storage_name": stored.storage_name, "size": stored.size},
        )
        result = UploadResult(
            status=UploadStatus.ACCEPTED, file=stored, declared_type=content_type
        )
        return await call_next(replace(ctx, upload=result))

    return filter_upload


async def _store(
    storage: FileStorage,
    destination_dir: Path,
    upload: UploadFile,
    content_type: str,
) -> UploadedFile:
    original_name = upload.filename or ""
    data = await upload.read()

    for _ in range(MAX_NAME_ATTEMPTS):
        storage_name = generate_storage_name(original_name)
        path = destination_dir / storage_name
        try:
            await storage.write(path, data)
        except FileExistsError:
            continue
        except OSError as exc:
            raise UploadWriteFailure(
                f"Failed to store upload in {destination_dir}: {exc}"
            ) from exc
        return UploadedFile(
            original_name=original_name,
            content_type=content_type,
            storage_name=storage_name,
            path=path,
            size=len(data),
        )

    raise UploadWriteFailure(
        f"Could not generate a free storage name in {destination_dir} "
        f"after {MAX_NAME_ATTEMPTS} attempts"
    )
