"""Streamed multipart upload of local audio files with progress reporting."""

import asyncio
import logging
import os
import tempfile
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO

from pydantic import ValidationError

from recordsync.models.schemas import Recording, RecordingStatus, UploadAccepted
from recordsync.services.errors import DecodingError, UploadCancelled, UploadValidationError
from recordsync.services.http_client import HTTPClient

logger = logging.getLogger(__name__)

MIME_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "m4a": "audio/mp4",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "mp4": "audio/mp4",
    "ogg": "audio/ogg",
}
ALLOWED_EXTENSIONS = frozenset(MIME_TYPES)

UPLOAD_PATH = "/recordings/upload"
CRLF = b"\r\n"

ProgressCallback = Callable[[float], None]


@dataclass
class UploadTask:
    """One in-flight upload. Never persisted."""

    path: Path
    title: str
    prompt_template_id: int | None = None
    progress: float = 0.0
    cancelled: bool = False
    on_progress: ProgressCallback | None = field(default=None, repr=False)

    def cancel(self) -> None:
        self.cancelled = True

    def advance(self, fraction: float) -> None:
        """Move progress forward; never backwards, never past 1.0."""
        fraction = min(max(fraction, 0.0), 1.0)
        if fraction <= self.progress:
            return
        self.progress = fraction
        if self.on_progress:
            self.on_progress(fraction)


def validate_upload(path: Path, title: str, max_bytes: int) -> int:
    """Check upload preconditions without touching the network. Returns the file size."""
    if not title or not title.strip():
        raise UploadValidationError("Title must not be empty")

    extension = path.suffix.lower().lstrip(".")
    if extension not in ALLOWED_EXTENSIONS:
        raise UploadValidationError(f"Unsupported audio format: {path.suffix or '(none)'}")

    if not path.is_file():
        raise UploadValidationError(f"File not found: {path}")

    size = path.stat().st_size
    if size <= 0:
        raise UploadValidationError(f"File is empty: {path.name}")
    if size > max_bytes:
        raise UploadValidationError(
            f"File too large: {size / 1024 / 1024:.1f}MB (limit {max_bytes / 1024 / 1024:.0f}MB)"
        )
    return size


@contextmanager
def scoped_file_access(path: Path) -> Iterator[BinaryIO]:
    """Hold a read handle on the source file for the duration of the upload."""
    handle = open(path, "rb")
    logger.debug(f"Acquired file access: {path}")
    try:
        yield handle
    finally:
        handle.close()
        logger.debug(f"Released file access: {path}")


# --- Multipart encoding ---


def _field_header(boundary: str, name: str, filename: str | None = None,
                  content_type: str | None = None) -> bytes:
    disposition = f'Content-Disposition: form-data; name="{name}"'
    if filename is not None:
        safe_name = filename.replace('"', "%22")
        disposition += f'; filename="{safe_name}"'
    lines = [f"--{boundary}", disposition]
    if content_type:
        lines.append(f"Content-Type: {content_type}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8")


def encode_multipart(
    out: BinaryIO,
    boundary: str,
    fields: dict[str, str],
    file_name: str,
    file_type: str,
    source: BinaryIO,
    chunk_size: int = 64 * 1024,
) -> int:
    """Write a multipart/form-data body to *out*, copying *source* in chunks.

    Text fields are written first, then the ``file`` part. Returns the
    number of bytes written.
    """
    written = 0
    for name, value in fields.items():
        part = _field_header(boundary, name) + value.encode("utf-8") + CRLF
        out.write(part)
        written += len(part)

    header = _field_header(boundary, "file", file_name, file_type)
    out.write(header)
    written += len(header)
    while chunk := source.read(chunk_size):
        out.write(chunk)
        written += len(chunk)

    closing = CRLF + f"--{boundary}--".encode("ascii") + CRLF
    out.write(closing)
    return written + len(closing)


@dataclass
class MultipartPart:
    name: str
    content: bytes
    filename: str | None = None
    content_type: str | None = None


def parse_multipart(body: bytes, boundary: str) -> list[MultipartPart]:
    """Split a multipart/form-data body back into its parts."""
    delimiter = b"--" + boundary.encode("ascii")
    parts = []
    for segment in body.split(delimiter)[1:]:
        if segment.startswith(b"--"):
            break
        segment = segment.removeprefix(CRLF).removesuffix(CRLF)
        raw_headers, _, content = segment.partition(CRLF + CRLF)
        name = filename = content_type = None
        for line in raw_headers.decode("utf-8").split("\r\n"):
            key, _, value = line.partition(":")
            if key.strip().lower() == "content-disposition":
                for param in value.split(";")[1:]:
                    pkey, _, pvalue = param.strip().partition("=")
                    if pkey == "name":
                        name = pvalue.strip('"')
                    elif pkey == "filename":
                        filename = pvalue.strip('"')
            elif key.strip().lower() == "content-type":
                content_type = value.strip()
        if name is None:
            raise ValueError("Multipart part without a name")
        parts.append(MultipartPart(name, content, filename, content_type))
    return parts


class ProgressReader:
    """File-like request body that reports how much has been sent.

    ``read`` is called by the transport from a worker thread. Reported
    progress stops short of 1.0; completion is reported by the pipeline
    once the server has answered.
    """

    def __init__(self, fileobj: BinaryIO, total: int, task: UploadTask,
                 report: Callable[[float], None]):
        self._file = fileobj
        self._total = total
        self._task = task
        self._report = report

    def __len__(self) -> int:
        return self._total

    def __iter__(self):
        while chunk := self.read(64 * 1024):
            yield chunk

    def read(self, size: int = -1) -> bytes:
        if self._task.cancelled:
            raise UploadCancelled("Upload cancelled")
        chunk = self._file.read(size)
        if self._total:
            self._report(min(self._file.tell() / self._total, 0.99))
        return chunk

    def tell(self) -> int:
        return self._file.tell()

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        return self._file.seek(offset, whence)


def normalize_status(status: RecordingStatus | None) -> RecordingStatus:
    """A response without a status means the server is still receiving the file."""
    return status or RecordingStatus.UPLOADING


class UploadPipeline:
    """Validates, encodes and submits new recordings."""

    def __init__(self, http: HTTPClient, max_bytes: int = 100 * 1024 * 1024,
                 chunk_size: int = 64 * 1024, timeout: float = 300.0,
                 temp_dir: str | None = None):
        self.http = http
        self.max_bytes = max_bytes
        self.chunk_size = chunk_size
        self.timeout = timeout
        self.temp_dir = temp_dir

    async def upload(
        self,
        path: str | Path,
        title: str,
        prompt_template_id: int | None = None,
        on_progress: ProgressCallback | None = None,
        task: UploadTask | None = None,
    ) -> Recording:
        """Upload one file and return the Recording the backend created.

        Raises UploadValidationError before any I/O when a precondition
        fails, UploadCancelled when *task* is cancelled, or a classified
        backend error.
        """
        path = Path(path)
        title = title.strip() if title else ""
        size = validate_upload(path, title, self.max_bytes)

        task = task or UploadTask(path=path, title=title, prompt_template_id=prompt_template_id)
        if on_progress is not None:
            task.on_progress = on_progress

        extension = path.suffix.lower().lstrip(".")
        mime_type = MIME_TYPES[extension]
        boundary = f"Boundary-{uuid.uuid4().hex}"
        fields = {"title": title}
        if prompt_template_id is not None:
            fields["prompt_template_id"] = str(prompt_template_id)

        logger.info(f"Preparing upload: {path.name}, size: {size / 1024 / 1024:.1f}MB")
        loop = asyncio.get_running_loop()

        def report(fraction: float) -> None:
            loop.call_soon_threadsafe(task.advance, fraction)

        temp_path: str | None = None
        try:
            with scoped_file_access(path) as source:
                fd, temp_path = tempfile.mkstemp(prefix="recordsync-", suffix=".multipart",
                                                 dir=self.temp_dir)
                with os.fdopen(fd, "wb") as out:
                    body_size = await asyncio.to_thread(
                        encode_multipart, out, boundary, fields, path.name, mime_type,
                        source, self.chunk_size,
                    )

                if task.cancelled:
                    raise UploadCancelled("Upload cancelled")

                with open(temp_path, "rb") as body:
                    payload = await self.http.request(
                        "POST",
                        UPLOAD_PATH,
                        data=ProgressReader(body, body_size, task, report),
                        headers={
                            "Content-Type": f"multipart/form-data; boundary={boundary}",
                            "Content-Length": str(body_size),
                        },
                        requires_auth=True,
                        timeout=self.timeout,
                    )
        finally:
            if temp_path is not None:
                Path(temp_path).unlink(missing_ok=True)

        recording = self._parse_response(payload, path, title, extension, mime_type, size)
        task.advance(1.0)
        logger.info(f"Upload succeeded: {recording.id} status={recording.status.value}")
        return recording

    @staticmethod
    def _parse_response(payload, path: Path, title: str, extension: str,
                        mime_type: str, size: int) -> Recording:
        try:
            accepted = UploadAccepted.model_validate(payload)
        except ValidationError:
            accepted = None

        if accepted is not None:
            return Recording(
                id=accepted.recording_id,
                title=title,
                original_filename=path.name,
                format=extension,
                mime_type=mime_type,
                created_at=datetime.now(timezone.utc),
                file_size=size,
                status=normalize_status(accepted.status),
            )

        try:
            recording = Recording.model_validate(payload)
        except ValidationError as e:
            logger.error(f"Upload response matched no known shape: {e}")
            raise DecodingError() from e
        return recording.model_copy(update={"status": normalize_status(recording.status)})
