"""Error taxonomy shared by every engine.

Each error carries a ``kind`` (the machine-readable tag returned to callers)
and the HTTP status the API layer answers with.
"""


class GreenBlocksError(Exception):
    kind = "error"
    http_status = 500

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        out = {"success": False, "error": self.kind, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class NotFound(GreenBlocksError):
    kind = "not_found"
    http_status = 404


class Forbidden(GreenBlocksError):
    kind = "forbidden"
    http_status = 403


class InvalidState(GreenBlocksError):
    kind = "invalid_state"
    http_status = 409


class ConcurrentModification(InvalidState):
    """The entity changed between read and guarded write; caller may retry."""
    kind = "concurrent_modification"


class InvalidArgument(GreenBlocksError):
    kind = "invalid_argument"
    http_status = 400


class ExternalFailure(GreenBlocksError):
    kind = "external_failure"
    http_status = 502


class Unauthorized(GreenBlocksError):
    kind = "unauthorized"
    http_status = 401
