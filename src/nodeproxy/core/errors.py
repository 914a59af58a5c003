"""Exceptions raised at the dial and hijack seams."""

from __future__ import annotations


class NodeproxyError(Exception):
    """Base class for nodeproxy errors."""


class DialError(NodeproxyError):
    """The backend connection could not be established."""

    def __init__(self, target: str, cause: BaseException) -> None:
        super().__init__(f"Error dialing backend {target}: {cause}")
        self.target = target
        self.cause = cause


class HijackNotSupportedError(NodeproxyError):
    """The inbound connection cannot be taken over."""


class HijackError(NodeproxyError):
    """Taking over the inbound connection failed part-way."""
