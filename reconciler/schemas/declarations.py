from __future__ import annotations

from pydantic import BaseModel


class ServiceDeclaration(BaseModel):
    name: str
    enabled: bool
