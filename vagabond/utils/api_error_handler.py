"""
Decorator translating ``requests`` failures into vagabond errors.

Transport methods are wrapped so callers only ever see NetworkError or
CloudTimeoutError, never a raw ``requests`` exception.
"""

import functools
import logging
from typing import Callable, Optional
from urllib.parse import urlsplit, urlunsplit

import requests

from ..exceptions import CloudTimeoutError, NetworkError


def handle_transport_errors(operation: str):
    """
    Map ``requests`` exceptions raised by the wrapped method.

    The URL is taken from the ``url`` argument (positional after ``method``
    or keyword) and logged without its query string, since upload targets
    embed credentials there.

    Args:
        operation: Short label used in log and error messages

    Returns:
        Decorated function raising only vagabond errors for transport failures
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            logger = getattr(self, "logger", logging.getLogger(func.__name__))
            url = _extract_url(args, kwargs)
            safe_url = redact_url(url)

            try:
                return func(self, *args, **kwargs)

            except requests.exceptions.Timeout as e:
                logger.warning(f"{operation} timed out: {safe_url}")
                raise CloudTimeoutError(
                    f"Timeout during {operation} ({safe_url})",
                    url=safe_url,
                    original_exception=e,
                ) from e

            except requests.exceptions.ConnectionError as e:
                logger.warning(f"{operation} connection failed: {safe_url}: {e}")
                raise NetworkError(
                    f"Connection failed during {operation} ({safe_url})",
                    url=safe_url,
                    original_exception=e,
                ) from e

            except requests.exceptions.RequestException as e:
                logger.error(f"{operation} request failed: {safe_url}: {e}")
                raise NetworkError(
                    f"Request failed during {operation} ({safe_url})",
                    url=safe_url,
                    original_exception=e,
                ) from e

        return wrapper

    return decorator


def _extract_url(args: tuple, kwargs: dict) -> Optional[str]:
    if "url" in kwargs:
        return kwargs["url"]
    if len(args) > 1 and isinstance(args[1], str):
        return args[1]
    return None


def redact_url(url: Optional[str]) -> Optional[str]:
    """Strip query string, fragment and userinfo from a URL"""
    if not url:
        return url
    parts = urlsplit(url)
    netloc = parts.hostname or ""
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, "", ""))


__all__ = ["handle_transport_errors", "redact_url"]
