from __future__ import annotations

from typing import Any


class AdapterError(Exception):
    """Base error for failures while turning a source entry into a registry submission."""

    def __init__(
        self,
        message: str,
        code: str = "ADAPTER_ERROR",
        status_code: int = 500,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.context = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "context": self.context}


class ValidationError(AdapterError):
    """Raised when an entry is missing data required to build a patient."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "VALIDATION_ERROR", 400, context)


class TransformationError(AdapterError):
    """Raised when an entry cannot be translated to a FHIR resource."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "TRANSFORMATION_ERROR", 422, context)


class RegistryError(AdapterError):
    """Raised when the downstream registry rejects or cannot serve a request."""

    def __init__(self, message: str, status_code: int = 500, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "REGISTRY_ERROR", status_code, context)


class ConfigurationError(AdapterError):
    """Raised when configuration values are invalid."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "CONFIGURATION_ERROR", 500, context)


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, AdapterError):
        return f"{exc.code}: {exc.message}"
    message = str(exc)
    return message or exc.__class__.__name__
