"""Error taxonomy shared by the chat core, the gateway and the REST routes.

Each error carries a stable wire ``code`` (sent in WebSocket ``error``
frames and REST error bodies) and the HTTP status used by the REST layer.
"""


class ChatError(Exception):
    """Base class for all chat errors."""

    code = "ChatError"
    status_code = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_frame(self, request_type: str = "") -> dict:
        """Serialize as an ``error`` frame for the initiating connection."""
        return {
            "type": "error",
            "code": self.code,
            "error": self.message,
            "requestType": request_type,
        }


class Unauthorized(ChatError):
    """Bad, missing or expired credential. Fatal to a connection."""
    code = "Unauthorized"
    status_code = 401


class NotAuthorized(ChatError):
    """Identity is known but not permitted to join the room."""
    code = "NotAuthorized"
    status_code = 403


class NotMember(ChatError):
    """Action on a room the caller has not joined."""
    code = "NotMember"
    status_code = 403


class InvalidPayload(ChatError):
    code = "InvalidPayload"
    status_code = 422


class StorageUnavailable(ChatError):
    """Persistence backend failed or timed out. Safe to retry with backoff."""
    code = "StorageUnavailable"
    status_code = 503


class NotFound(ChatError):
    code = "NotFound"
    status_code = 404
