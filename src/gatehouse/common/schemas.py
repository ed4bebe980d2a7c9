"""Shared Pydantic schemas for Gatehouse."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    service: str = "gatehouse"


class MessageResponse(BaseModel):
    message: str
