# src/gateway/request_models.py

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class HealthReport(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    status: str = Field("healthy", examples=["healthy"])
    timestamp: str
    ollama_url: str = Field(..., examples=["http://localhost:11434"])
    ollama_version: str = Field(..., examples=["0.3.12"])
    model_loaded: bool
    model_name: str = Field(..., examples=["mistral:7b"])
    warmup_state: Optional[str] = Field(None, examples=["KEEPALIVE_ACTIVE"])


class UnhealthyReport(BaseModel):
    status: str = "unhealthy"
    timestamp: str
    error: str
