"""
Stream mutation operations shared by the API and the CLI.
"""

from streamdash.core.streams.service import (
    InvalidStreamUpdateError,
    InvalidTransitionError,
    StreamError,
    StreamExistsError,
    StreamNotFoundError,
    StreamService,
)

__all__ = [
    "InvalidStreamUpdateError",
    "InvalidTransitionError",
    "StreamError",
    "StreamExistsError",
    "StreamNotFoundError",
    "StreamService",
]
