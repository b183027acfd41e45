"""
Error taxonomy for the chat relay.

Per-descriptor and per-tool failures (TransportFailure, tool timeouts) are recovered
locally by degrading the tool set. Admission and validation errors end the request
before any work starts. Model errors after streaming has begun become a terminal
stream event.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

RateLimitScope = Literal["address", "identity"]


class ChatRelayError(Exception):
    """Base class for all relay errors."""


class InvalidRequestError(ChatRelayError):
    """Bad caller input; the request is rejected before work begins."""


class DescriptorValidationError(InvalidRequestError):
    """A tool-provider descriptor is missing required fields."""

    def __init__(self, message: str, *, label: str = "") -> None:
        super().__init__(message)
        self.label = label


class AdmissionDenied(ChatRelayError):
    """Quota breach for one scope (address or identity)."""

    def __init__(self, *, scope: RateLimitScope, reset_time: datetime, limit: int) -> None:
        super().__init__(f"Rate limit exceeded for {scope} scope")
        self.scope = scope
        self.reset_time = reset_time
        self.limit = limit


class BackingStoreUnavailable(ChatRelayError):
    """The counter store could not be consulted; the gate itself is degraded."""

    def __init__(self, *, reset_time: datetime, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Rate limit store unavailable: {type(cause).__name__ if cause else 'unknown'}")
        self.reset_time = reset_time
        self.cause = cause


class TransportFailure(ChatRelayError):
    """A single tool provider could not be brought online."""

    def __init__(self, message: str, *, label: str = "") -> None:
        super().__init__(message)
        self.label = label


class ModelCredentialError(ChatRelayError):
    """The model call failed because of a missing/invalid access credential."""


class GenerationError(ChatRelayError):
    """Any other failure of the model/tool loop."""

    def __init__(self, message: str, *, code: str = "") -> None:
        super().__init__(message)
        self.code = code
