from __future__ import annotations


class VidupError(RuntimeError):
    retryable = False


class ValidationError(VidupError):
    pass


class UnsupportedFormat(ValidationError):
    def __init__(self, mime_type: str | None) -> None:
        super().__init__(f"Unsupported file format: {mime_type or 'unknown'}.")
        self.mime_type = mime_type


class FileTooLarge(ValidationError):
    def __init__(self, size: int, max_size: int) -> None:
        super().__init__(f"File too large: {size} bytes (maximum {max_size} bytes).")
        self.size = size
        self.max_size = max_size


class MissingTitle(ValidationError):
    def __init__(self) -> None:
        super().__init__("A video title is required.")


class NetworkError(VidupError):
    retryable = True


class ServerError(VidupError):
    retryable = True

    def __init__(self, message: str, *, status_code: int, body: object = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AuthenticationFailed(VidupError):
    def __init__(self, message: str = "Authentication failed.") -> None:
        super().__init__(message)
        self.status_code = 401
