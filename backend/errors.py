# errors.py - Error taxonomy shared by every router
#
# Each error carries its HTTP status and renders its own JSON body:
#   - field-level failures and conflicts → {"errors": [{"msg": ...}]}
#   - everything else                    → {"msg": ...}
from typing import Any, Dict, List, Optional

from fastapi import HTTPException


class AppError(HTTPException):
    status_code = 500

    def __init__(self, msg: str):
        super().__init__(status_code=self.status_code, detail=msg)
        self.msg = msg

    def to_content(self) -> Dict[str, Any]:
        return {"msg": self.msg}


class ValidationFailed(AppError):
    """Malformed or missing input."""
    status_code = 400

    def __init__(self, msg: str, param: Optional[str] = None, errors: Optional[List[dict]] = None):
        super().__init__(msg)
        self.errors = errors or [{"msg": msg, "param": param}]

    def to_content(self) -> Dict[str, Any]:
        return {"errors": self.errors}


class Unauthenticated(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    """Uniqueness violation (license key, email, names)."""
    status_code = 400

    def to_content(self) -> Dict[str, Any]:
        return {"errors": [{"msg": self.msg}]}


class InvalidState(AppError):
    """Illegal equipment lifecycle transition."""
    status_code = 400
