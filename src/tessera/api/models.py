"""Pydantic response models for the Tessera API."""

from typing import Optional

from pydantic import BaseModel


class CeremonyResultResponse(BaseModel):
    status: str
    handle: str


class SessionInfo(BaseModel):
    logged_in: bool
    handle: Optional[str]
    pending_ceremony: Optional[str]


class ErrorDetail(BaseModel):
    status: int
    message: str


class ErrorResponse(BaseModel):
    error: ErrorDetail
