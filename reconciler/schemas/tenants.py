from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from reconciler.utils import url_escape


class TenantLimits(BaseModel):
    max_memory: str = "64MB"
    max_store: str = "5GB"
    max_streams: int = 50
    max_consumers: int = 500


class Permissions(BaseModel):
    """Backend-specific capability patterns.

    NATS uses ``publish``/``subscribe`` subject lists, RabbitMQ uses the
    ``configure``/``write``/``read`` regular expressions plus comma-separated
    user ``tags`` (``management`` lets the user log in to the management API).
    """

    publish: Optional[List[str]] = None
    subscribe: Optional[List[str]] = None
    configure: Optional[str] = None
    write: Optional[str] = None
    read: Optional[str] = None
    tags: Optional[str] = None


class TenantUser(BaseModel):
    user: str
    admin: bool = False
    permissions: Dict[str, str] = Field(default_factory=dict)


class TenantOut(BaseModel):
    backend: str
    tenant: str
    users: List[TenantUser]


class ConnectionDescriptor(BaseModel):
    backend: str
    tenant: str
    user: str
    password: str
    uri: str
    credentials_path: str
    permissions: Dict[str, str] = Field(default_factory=dict)
    topology: List[str] = Field(default_factory=list)
    reloaded: bool = True

    def masked_uri(self) -> str:
        if not self.password:
            return self.uri
        return self.uri.replace(f":{url_escape(self.password)}@", ":****@")


class ConnectionTestResult(BaseModel):
    backend: str
    tenant: str
    user: str
    ok: bool
    detail: str


class TenantCreate(BaseModel):
    name: str
    limits: Optional[TenantLimits] = None


class UserCreate(BaseModel):
    user: str
    permissions: Optional[Permissions] = None
