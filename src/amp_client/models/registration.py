"""
Provider registration record, persisted as ``registrations/<provider>.json``.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Registration(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: str
    api_url: str = Field(alias="apiUrl")
    route_url: Optional[str] = Field(default=None, alias="routeUrl")
    address: str
    api_key: str = Field(alias="apiKey", repr=False)
    registered_at: str = Field(alias="registeredAt")
    tenant: Optional[str] = None
    agent_name: Optional[str] = Field(default=None, alias="agentName")
    provider_agent_id: Optional[str] = Field(default=None, alias="providerAgentId")
    fingerprint: Optional[str] = None

    @property
    def route_endpoint(self) -> str:
        return self.route_url or f"{self.api_url.rstrip('/')}/route"
