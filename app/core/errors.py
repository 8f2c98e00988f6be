"""Gateway error hierarchy.

Only raised across the HTTP seam. The session core never lets these escape
into transport event handlers.
"""


class GatewayError(Exception):
    """Base class for errors surfaced to control-surface callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SessionNotFoundError(GatewayError):
    status_code = 404

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session '{session_id}' not found. Please initialize first at "
            f"/api/whatsapp/{session_id}/init (POST)"
        )
        self.session_id = session_id


class SessionNotConnectedError(GatewayError):
    status_code = 400

    def __init__(self, session_id: str) -> None:
        super().__init__("WhatsApp not connected")
        self.session_id = session_id


class ValidationFailed(GatewayError):
    status_code = 400
