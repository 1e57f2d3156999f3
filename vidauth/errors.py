from __future__ import annotations


class AuthError(RuntimeError):
    pass


class AuthFlowError(AuthError):
    pass


class StateMismatch(AuthFlowError):
    def __init__(self, message: str = "Invalid state parameter.") -> None:
        super().__init__(message)


class MissingVerifier(AuthFlowError):
    def __init__(self, message: str = "Code verifier not found.") -> None:
        super().__init__(message)


class ProviderError(AuthFlowError):
    def __init__(self, error: str, description: str | None = None) -> None:
        detail = f"{error} - {description}" if description else error
        super().__init__(f"OAuth2 error: {detail}")
        self.error = error
        self.description = description


class TokenError(AuthError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
