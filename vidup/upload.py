from __future__ import annotations

import asyncio
import math
import mimetypes
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .constants import (
    ALLOWED_MIME_TYPES,
    CHUNK_SIZE,
    LOGGER,
    MAX_FILE_SIZE,
    MULTIPART_API,
    MULTIPART_THRESHOLD,
    UPLOAD_API,
)
from .errors import FileTooLarge, MissingTitle, ServerError, UnsupportedFormat, VidupError
from .http import (
    AuthenticatedRequestClient,
    ProgressStream,
    encode_multipart,
    json_body,
    raise_for_status,
)


class UploadState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SMALL_UPLOAD = "small_upload"
    INITIATING = "initiating"
    CHUNK_UPLOADING = "chunk_uploading"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTING = "aborting"
    ABORTED = "aborted"
    FAILED = "failed"


class UploadStrategy(str, Enum):
    SINGLE = "single"
    CHUNKED = "chunked"


@dataclass
class VideoFile:
    path: Path
    name: str
    size: int
    mime_type: str | None

    @classmethod
    def from_path(cls, path: str | Path, mime_type: str | None = None) -> "VideoFile":
        file_path = Path(path)
        if mime_type is None:
            mime_type, _ = mimetypes.guess_type(file_path.name)
        return cls(
            path=file_path,
            name=file_path.name,
            size=file_path.stat().st_size,
            mime_type=mime_type,
        )

    def read_range(self, start: int, end: int) -> bytes:
        with self.path.open("rb") as handle:
            handle.seek(start)
            return handle.read(end - start)


@dataclass
class VideoMetadata:
    title: str | None
    description: str = ""


class CancellationToken:
    """Cooperative cancel flag. Setting it never interrupts work already in flight."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


@dataclass
class UploadSession:
    upload_id: str
    file: VideoFile
    total_size: int
    chunk_size: int
    chunk_count: int
    chunks_acked: int = 0
    state: UploadState = UploadState.INITIATING
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    started_at: float = field(default_factory=time.time)

    @property
    def aborted(self) -> bool:
        return self.cancellation.cancelled

    @property
    def progress(self) -> int:
        # Chunk-granular on purpose; not weighted by bytes.
        return round(self.chunks_acked / self.chunk_count * 100)

    def chunk_range(self, part_number: int) -> tuple[int, int]:
        start = (part_number - 1) * self.chunk_size
        return start, min(start + self.chunk_size, self.total_size)


@dataclass
class ChunkAck:
    part_number: int
    etag: str | None = None
    uploaded_parts: int | None = None
    total_parts: int | None = None
    message: str | None = None

    @classmethod
    def from_payload(cls, payload: dict, part_number: int) -> "ChunkAck":
        if not isinstance(payload, dict):
            payload = {}
        return cls(
            part_number=payload.get("partNumber", part_number),
            etag=payload.get("etag"),
            uploaded_parts=payload.get("uploadedParts"),
            total_parts=payload.get("totalParts"),
            message=payload.get("message"),
        )


@dataclass
class UploadResult:
    state: UploadState
    resource: dict | None = None
    upload_id: str | None = None


class UploadRegistry:
    """Active chunked uploads keyed by upload id; sessions never share state."""

    def __init__(self) -> None:
        self._sessions: dict[str, UploadSession] = {}

    def add(self, session: UploadSession) -> None:
        if session.upload_id in self._sessions:
            raise RuntimeError(f"Upload {session.upload_id} is already registered.")
        self._sessions[session.upload_id] = session

    def get(self, upload_id: str) -> UploadSession | None:
        return self._sessions.get(upload_id)

    def remove(self, upload_id: str) -> UploadSession | None:
        return self._sessions.pop(upload_id, None)

    def sessions(self) -> list[UploadSession]:
        return list(self._sessions.values())

    def __contains__(self, upload_id: str) -> bool:
        return upload_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


class UploadOrchestrator:
    """Uploads videos either in one request or as sequential numbered chunks.

    Files below ``threshold`` bytes go up in a single multipart POST. Larger
    files are uploaded as parts 1..N: part N+1 is never sent before part N is
    acknowledged. Cancellation is checked between parts; a part already on the
    wire finishes and its result is discarded. Any failure sends a best-effort
    abort to the server and drops the local session.
    """

    def __init__(
        self,
        client: AuthenticatedRequestClient,
        *,
        threshold: int = MULTIPART_THRESHOLD,
        chunk_size: int = CHUNK_SIZE,
        max_file_size: int = MAX_FILE_SIZE,
        allowed_mime_types=ALLOWED_MIME_TYPES,
        registry: UploadRegistry | None = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive.")
        self._client = client
        self.threshold = threshold
        self.chunk_size = chunk_size
        self.max_file_size = max_file_size
        self.allowed_mime_types = frozenset(allowed_mime_types)
        self.registry = registry or UploadRegistry()

    # -- validation and strategy -------------------------------------------------

    def validate(self, file: VideoFile, metadata: VideoMetadata) -> None:
        if file.mime_type not in self.allowed_mime_types:
            raise UnsupportedFormat(file.mime_type)
        if file.size > self.max_file_size:
            raise FileTooLarge(file.size, self.max_file_size)
        if not metadata.title or not metadata.title.strip():
            raise MissingTitle()

    def select_strategy(self, file: VideoFile) -> UploadStrategy:
        if file.size < self.threshold:
            return UploadStrategy.SINGLE
        return UploadStrategy.CHUNKED

    # -- server calls ------------------------------------------------------------

    async def upload_small(self, file: VideoFile, metadata: VideoMetadata, on_progress=None) -> dict:
        body, content_type = encode_multipart(
            {"title": metadata.title or "", "description": metadata.description or ""},
            {"file": (file.name, file.read_range(0, file.size), file.mime_type)},
        )
        response = await self._client.post(
            f"{UPLOAD_API}/video",
            content=ProgressStream(body, on_progress),
            headers={"Content-Type": content_type, "Content-Length": str(len(body))},
        )
        return json_body(response)

    async def initiate(self, file: VideoFile, metadata: VideoMetadata) -> UploadSession:
        response = await self._client.post(
            f"{MULTIPART_API}/initiate",
            json={
                "title": metadata.title,
                "description": metadata.description or "",
                "originalFilename": file.name,
                "fileSize": file.size,
                "mimeType": file.mime_type,
            },
        )
        payload = json_body(response)
        upload_id = payload.get("uploadId") if isinstance(payload, dict) else None
        if not isinstance(upload_id, str) or not upload_id:
            raise ServerError(
                "Upload initiation response is missing uploadId.",
                status_code=response.status_code,
                body=payload,
            )

        session = UploadSession(
            upload_id=upload_id,
            file=file,
            total_size=file.size,
            chunk_size=self.chunk_size,
            chunk_count=math.ceil(file.size / self.chunk_size),
        )
        server_parts = payload.get("totalParts")
        if isinstance(server_parts, int) and server_parts != session.chunk_count:
            LOGGER.warning(
                "Server expects %s parts for upload %s; sending %s",
                server_parts,
                upload_id,
                session.chunk_count,
            )
        self.registry.add(session)
        LOGGER.info(
            "Initiated multipart upload %s (%s bytes, %s parts)",
            upload_id,
            session.total_size,
            session.chunk_count,
        )
        return session

    async def upload_chunk(self, session: UploadSession, part_number: int, on_progress=None) -> ChunkAck:
        start, end = session.chunk_range(part_number)
        body, content_type = encode_multipart(
            {"uploadId": session.upload_id, "partNumber": str(part_number)},
            {"chunk": ("blob", session.file.read_range(start, end), "application/octet-stream")},
        )
        response = await self._client.post(
            f"{MULTIPART_API}/upload-chunk",
            content=ProgressStream(body, on_progress),
            headers={"Content-Type": content_type, "Content-Length": str(len(body))},
        )
        return ChunkAck.from_payload(json_body(response), part_number)

    async def complete(self, upload_id: str) -> dict:
        response = await self._client.post(f"{MULTIPART_API}/complete/{upload_id}")
        return json_body(response)

    async def abort(self, upload_id: str) -> str:
        response = await self._client.delete(f"{MULTIPART_API}/abort/{upload_id}")
        raise_for_status(response)
        return response.text

    async def status(self, upload_id: str) -> dict:
        response = await self._client.get(f"{MULTIPART_API}/status/{upload_id}")
        return json_body(response)

    # -- session control ---------------------------------------------------------

    def cancel(self, upload_id: str) -> bool:
        session = self.registry.get(upload_id)
        if session is None:
            return False
        session.cancellation.cancel()
        LOGGER.info("Cancellation requested for upload %s", upload_id)
        return True

    def get_active_uploads(self) -> list[UploadSession]:
        return self.registry.sessions()

    async def _send_abort(self, session: UploadSession, state_cb) -> None:
        _transition(session, UploadState.ABORTING, state_cb)
        try:
            # Shielded so a cancelled caller still tells the server to drop the parts.
            await asyncio.shield(self.abort(session.upload_id))
        except VidupError as error:
            LOGGER.warning("Failed to abort upload %s: %s", session.upload_id, error)

    # -- entry point -------------------------------------------------------------

    async def upload_video(
        self,
        file: VideoFile,
        metadata: VideoMetadata,
        progress_cb=None,
        chunk_progress_cb=None,
        upload_id_cb=None,
        *,
        state_cb=None,
    ) -> UploadResult:
        """Validate ``file`` and upload it with the strategy its size calls for.

        ``state_cb`` receives every ``UploadState`` the upload passes through,
        starting at ``IDLE`` and ending at ``COMPLETED``, ``ABORTED`` or
        ``FAILED``.
        """
        _notify(state_cb, UploadState.IDLE)
        _notify(state_cb, UploadState.VALIDATING)
        try:
            self.validate(file, metadata)
        except VidupError:
            _notify(state_cb, UploadState.FAILED)
            raise

        if self.select_strategy(file) is UploadStrategy.SINGLE:
            LOGGER.info("Using single-request upload for %s (%s bytes)", file.name, file.size)
            _notify(state_cb, UploadState.SMALL_UPLOAD)
            try:
                resource = await self.upload_small(file, metadata, progress_cb)
            except BaseException:
                _notify(state_cb, UploadState.FAILED)
                raise
            _notify(state_cb, UploadState.COMPLETED)
            return UploadResult(state=UploadState.COMPLETED, resource=resource)

        LOGGER.info("Using multipart upload for %s (%s bytes)", file.name, file.size)
        _notify(state_cb, UploadState.INITIATING)
        try:
            session = await self.initiate(file, metadata)
        except BaseException:
            _notify(state_cb, UploadState.FAILED)
            raise
        return await self._drive(session, progress_cb, chunk_progress_cb, upload_id_cb, state_cb)

    async def _drive(
        self,
        session: UploadSession,
        progress_cb,
        chunk_progress_cb,
        upload_id_cb,
        state_cb,
    ) -> UploadResult:
        try:
            if upload_id_cb is not None:
                upload_id_cb(session.upload_id)
            _transition(session, UploadState.CHUNK_UPLOADING, state_cb)

            for part_number in range(1, session.chunk_count + 1):
                if session.aborted:
                    break

                def on_chunk_progress(percent: int, part_number: int = part_number) -> None:
                    if chunk_progress_cb is not None:
                        chunk_progress_cb(part_number, percent, session.chunk_count)

                await self.upload_chunk(session, part_number, on_chunk_progress)
                if session.aborted:
                    break

                session.chunks_acked = part_number
                if progress_cb is not None:
                    progress_cb(session.progress)

            if session.aborted:
                await self._send_abort(session, state_cb)
                _transition(session, UploadState.ABORTED, state_cb)
                LOGGER.info(
                    "Upload %s cancelled after %s of %s parts",
                    session.upload_id,
                    session.chunks_acked,
                    session.chunk_count,
                )
                return UploadResult(state=UploadState.ABORTED, upload_id=session.upload_id)

            _transition(session, UploadState.COMPLETING, state_cb)
            resource = await self.complete(session.upload_id)
        except BaseException as error:
            # Callback errors and task cancellation end the session like a failed part.
            LOGGER.warning("Upload %s failed: %r", session.upload_id, error)
            if session.state is not UploadState.ABORTING:
                await self._send_abort(session, state_cb)
            _transition(session, UploadState.FAILED, state_cb)
            raise
        finally:
            self.registry.remove(session.upload_id)

        _transition(session, UploadState.COMPLETED, state_cb)
        LOGGER.info("Upload %s completed", session.upload_id)
        return UploadResult(state=UploadState.COMPLETED, resource=resource, upload_id=session.upload_id)


def _notify(state_cb, state: UploadState) -> None:
    if state_cb is not None:
        state_cb(state)


def _transition(session: UploadSession, state: UploadState, state_cb) -> None:
    session.state = state
    _notify(state_cb, state)
