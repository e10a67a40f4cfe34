from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ModelRoute(BaseModel):
    """
    Persisted routing decision for a single model name.

    When `provider` is set, that provider's live configuration (api_base,
    api_key, headers, body) is merged in at resolution time and values
    stored here take precedence. Local routes additionally remember which
    hub file backs them so the backend can be respawned without
    re-running discovery.
    """

    model_config = ConfigDict(extra="forbid")

    provider: Optional[str] = None
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Dict[str, Any] = Field(default_factory=dict)
    repo_id: Optional[str] = None
    file_path: Optional[str] = None
    file_size_bytes: Optional[int] = Field(None, ge=0)


class ResolvedConfig(BaseModel):
    """
    Fully merged route handed to the request proxy.
    """

    model: str
    provider: Optional[str] = None
    api_base: str
    api_key: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Dict[str, Any] = Field(default_factory=dict)


__all__ = ["ModelRoute", "ResolvedConfig"]
