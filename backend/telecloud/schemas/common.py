"""Shared Pydantic schemas."""
from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    uptime: float
    timestamp: int


class MessageResponse(BaseModel):
    message: str
