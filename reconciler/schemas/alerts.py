from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel


class AlertRuleStatus(BaseModel):
    file: str
    category: str
    state: str
    core: bool
    requires_instrumentation: bool
    source_services: List[str]
    rule_count: Optional[int] = None

    @property
    def enabled(self) -> bool:
        return self.state == "enabled"


class AlertChange(BaseModel):
    file: str
    category: str
    action: str
    reason: str
    state: str
    reloaded: Optional[bool] = None


class SyncReport(BaseModel):
    changes: List[AlertChange]
    enabled_count: int
    disabled_count: int
    reloaded: Optional[bool] = None

    @property
    def renames(self) -> int:
        return self.enabled_count + self.disabled_count
