import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from fastapi import HTTPException
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class ApiError(HTTPException):
    """HTTP error rendered as the ``{error, message?, details?}`` envelope."""

    def __init__(self, status_code: int, error: str, message: Optional[str] = None, details: Any = None, **extra: Any):
        super().__init__(status_code=status_code, detail=error)
        self.error = error
        self.message = message
        self.details = details
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.message is not None:
            body["message"] = self.message
        if self.details is not None:
            body["details"] = self.details
        body.update(self.extra)
        return body


class Unauthorized(ApiError):
    def __init__(self):
        super().__init__(401, "Unauthorized")


@contextmanager
def db_errors(tag: str, message: str):
    """Turn a database failure inside the block into a 500 with ``message``."""
    try:
        yield
    except PyMongoError:
        logger.exception("%s DB error", tag)
        raise ApiError(500, message)
