"""
Caller identity extraction.

Finds the identity header inside the percent-encoded header blob that the
edge emits per request.
"""

import re
import threading
import warnings
from typing import Optional
from urllib.parse import unquote

import structlog

logger = structlog.get_logger()

DEFAULT_IDENTITY_HEADER = "X-Api-Key"

# Pairs are newline separated; the edge percent-encodes the newline itself.
_PAIR_SEPARATOR_RE = re.compile(r"\r?\n|%0A", re.IGNORECASE)
_MALFORMED_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class IdentityDecodeWarning(UserWarning):
    """The identity value could not be percent-decoded; the raw value was kept."""


class IdentityExtractor:
    """Extracts the identity token from a header blob.

    Stateless apart from a diagnostic counter of decode failures, so one
    instance can be shared between worker threads.
    """

    def __init__(self, header_name: str = DEFAULT_IDENTITY_HEADER):
        if not header_name or not header_name.strip():
            raise ValueError("header_name is required and cannot be empty")
        self.header_name = header_name.strip()
        self._lowered_name = self.header_name.lower()
        self._lock = threading.Lock()
        self._decode_failures = 0

    @property
    def decode_failures(self) -> int:
        with self._lock:
            return self._decode_failures

    def extract(self, blob: Optional[str]) -> Optional[str]:
        """Return the decoded identity token, or None when absent.

        Args:
            blob: Raw header blob (``Name:value`` pairs)

        Returns:
            Decoded value of the first matching header, the raw value if it
            cannot be decoded, or None if there is no match
        """
        if not blob:
            return None

        for pair in _PAIR_SEPARATOR_RE.split(blob):
            name, separator, value = pair.partition(":")
            if not separator:
                continue
            if unquote(name).strip().lower() != self._lowered_name:
                continue
            value = value.strip()
            if not value:
                return None
            return self._decode(value)
        return None

    def _decode(self, value: str) -> str:
        if _MALFORMED_ESCAPE_RE.search(value):
            return self._degrade(value, "malformed percent escape")
        try:
            return unquote(value, errors="strict")
        except UnicodeDecodeError:
            return self._degrade(value, "escaped bytes are not valid UTF-8")

    def _degrade(self, value: str, reason: str) -> str:
        with self._lock:
            self._decode_failures += 1
        logger.warning("identity_decode_failed", header=self.header_name, reason=reason)
        warnings.warn(
            IdentityDecodeWarning(f"{self.header_name} value kept encoded: {reason}"),
            stacklevel=3,
        )
        return value
