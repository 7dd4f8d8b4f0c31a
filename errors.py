class ValidationError(ValueError):
    status_code = 400


class AuthenticationError(ValueError):
    status_code = 401


class NotFoundError(ValueError):
    status_code = 404


class ConflictError(ValueError):
    status_code = 409


class StoreError(RuntimeError):
    status_code = 500

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message)


DomainError = (ValidationError, AuthenticationError, NotFoundError, ConflictError)
