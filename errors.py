"""
Error taxonomy

Every failure surfaced to a client is one of these. They are HTTPExceptions so
controllers can raise them directly and FastAPI routes them to the JSON
handlers registered in main.py.
"""

from typing import Optional

from fastapi import HTTPException


class ValidationError(HTTPException):
    """Missing or malformed input (400)."""

    def __init__(self, message: str = "Validation failed", errors: Optional[list] = None):
        super().__init__(status_code=400, detail=message)
        self.errors = errors or []


class NotFoundError(HTTPException):
    """Document lookup by id came back empty (404)."""

    def __init__(self, message: str = "Not found"):
        super().__init__(status_code=404, detail=message)


class AuthError(HTTPException):
    """Missing/invalid/expired token (401) or role mismatch (403)."""

    def __init__(self, message: str = "Not authenticated", status_code: int = 401):
        headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
        super().__init__(status_code=status_code, detail=message, headers=headers)


class ServerError(HTTPException):
    """Database, image host or other upstream failure (500)."""

    def __init__(self, message: str = "Internal server error"):
        super().__init__(status_code=500, detail=message)


class ConflictError(HTTPException):
    """Unique field (email, username, firebaseUid) already taken (409)."""

    def __init__(self, message: str = "Already exists"):
        super().__init__(status_code=409, detail=message)
