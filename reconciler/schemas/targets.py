from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class TargetEntry(BaseModel):
    targets: List[str]
    labels: Dict[str, str] = Field(default_factory=dict)


class TargetCreate(BaseModel):
    name: str
    host: Optional[str] = None
    port: Optional[int] = None
    type: Optional[str] = None


class TargetKindOut(BaseModel):
    kind: str
    file: str
    identity_label: str
    default_port: int
    service_label: str
    targets: List[TargetEntry]
