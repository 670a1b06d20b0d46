from datetime import datetime

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    version: str
    storage_backend: str
    calendar_provider: str
    timestamp: datetime
