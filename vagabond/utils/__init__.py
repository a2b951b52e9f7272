"""Shared helpers for vagabond."""

from .api_error_handler import handle_transport_errors, redact_url

__all__ = ["handle_transport_errors", "redact_url"]
