from __future__ import annotations


class AppealError(Exception):
    """Base class for failures surfaced by the appeal lifecycle."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(AppealError):
    def __init__(self, errors: dict[str, str]) -> None:
        summary = "; ".join(f"{field}: {text}" for field, text in errors.items())
        super().__init__(summary or "Invalid input")
        self.errors = dict(errors)


class PersistenceError(AppealError):
    pass


class AuthorizationError(AppealError):
    pass


class InvalidStateError(AppealError):
    pass


class AppealNotFoundError(AppealError):
    pass
