"""Error taxonomy surfaced by the messaging core."""


class AppError(Exception):
    kind = "app_error"

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthenticationError(AppError):
    kind = "authentication_error"

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message, status_code=401)


class AccessDeniedError(AppError):
    kind = "access_denied"

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message, status_code=403)


class NotFoundError(AppError):
    kind = "not_found"

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message, status_code=404)


class ValidationError(AppError):
    kind = "validation_error"

    def __init__(self, message: str = "Invalid input") -> None:
        super().__init__(message, status_code=400)


class ConflictError(AppError):
    kind = "conflict"

    def __init__(self, message: str = "Conflict") -> None:
        super().__init__(message, status_code=409)


class StorageError(AppError):
    kind = "server_error"

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message, status_code=500)
