"""Shared Pydantic schemas."""
from typing import List, Optional

from pydantic import BaseModel

from docvault.schemas.base import CamelModel


class DeleteResponse(BaseModel):
    deleted: bool = True
    id: str = ""


class ErrorDetail(CamelModel):
    """Body of every error response, under FastAPI's ``detail`` key.

    Only categorized, caller-safe text goes in here.
    """
    code: str
    message: str
    details: Optional[List[str]] = None
    warnings: Optional[List[str]] = None
    retry_after: Optional[int] = None
