from typing import Any, Dict, Optional


class GameError(Exception):
    """Raised when a game operation breaks a business rule."""

    status_code = 400
    code = "game_error"

    def __init__(self, message: str, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.payload = payload or {"error": self.code, "message": message}


class NotFound(GameError):
    status_code = 404
    code = "not_found"


class InvalidRequest(GameError):
    status_code = 400
    code = "invalid_request"


class DuplicateDiscovery(Exception):
    """The (session, treasure) pair was already recorded by a concurrent scan."""
