from __future__ import annotations


class CtdynamoPyError(Exception):
    pass


class ConfigurationError(CtdynamoPyError, ValueError):
    pass


class UsageError(CtdynamoPyError):
    pass


class EncodingError(CtdynamoPyError, ValueError):
    def __init__(self, message: str, *, attribute: str | None = None) -> None:
        super().__init__(f"{attribute}: {message}" if attribute else message)
        self.attribute = attribute
