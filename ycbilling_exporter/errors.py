from __future__ import annotations

# Upstream error bodies are kept for diagnostics, trimmed to keep log lines readable
MAX_BODY_CHARS = 2048


class ExporterError(Exception):
    """Base class for errors raised by the exporter."""


class ConfigError(ExporterError):
    """Required settings are missing or invalid. Fatal at startup."""


class UpstreamError(ExporterError):
    def __init__(self, message: str, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        text = super().__str__()
        if self.status_code is not None:
            text = f"{text} (status {self.status_code})"
        if self.body:
            text = f"{text}: {self.body}"
        return text


class AuthError(UpstreamError):
    """The IAM token exchange failed."""


class BillingError(UpstreamError):
    """The billing account could not be fetched."""


class SerializationError(BillingError, ValueError):
    """The billing response was not valid JSON or its balance was not numeric."""
