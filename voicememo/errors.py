"""
Exceptions raised by the transport clients.
"""

from typing import Optional


class TransportError(Exception):
    """An object store or speech API call failed (I/O, auth, HTTP or decoding problem)."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code if code is not None else 500
