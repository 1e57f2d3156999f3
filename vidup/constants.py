from __future__ import annotations

import logging

LOGGER = logging.getLogger("vidup.client")
APP_VERSION = "0.1.0"

MIB = 1024 * 1024
MULTIPART_THRESHOLD = 5 * MIB
CHUNK_SIZE = 5 * MIB
MAX_FILE_SIZE = 2 * 1024 * MIB

ALLOWED_MIME_TYPES = frozenset(
    {
        "video/mp4",
        "video/avi",
        "video/mov",
        "video/wmv",
        "video/flv",
        "video/webm",
        "video/mkv",
        "video/m4v",
        "video/quicktime",
        "video/x-msvideo",
        "video/x-matroska",
        "video/x-m4v",
    }
)

UPLOAD_API = "/api/upload"
MULTIPART_API = f"{UPLOAD_API}/multipart"
STREAMING_API = "/api/streaming"
