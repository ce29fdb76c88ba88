"""GreenBlocks carbon-credit marketplace core."""
from .errors import (ConcurrentModification, ExternalFailure, Forbidden, GreenBlocksError, InvalidArgument,
                     InvalidState, NotFound, Unauthorized)

__version__ = "0.1.0"

__all__ = [
    "ConcurrentModification",
    "ExternalFailure",
    "Forbidden",
    "GreenBlocksError",
    "InvalidArgument",
    "InvalidState",
    "NotFound",
    "Unauthorized",
    "__version__",
]
