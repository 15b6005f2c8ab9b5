# app/schemas/consistency.py
from datetime import datetime
from typing import Dict, List, Literal
from pydantic import BaseModel

Severity = Literal["critical", "warning", "info"]


class Discrepancy(BaseModel):
    kind: str
    severity: Severity
    member_id: int | None = None
    creator_id: int | None = None
    commission_id: int | None = None
    click_id: int | None = None
    field: str | None = None
    stored: str | None = None
    expected: str | None = None
    detail: str
    fixed: bool = False


class ConsistencyReport(BaseModel):
    checked_at: datetime
    auto_fix: bool
    members_checked: int
    creators_checked: int
    commissions_checked: int
    clicks_checked: int
    discrepancies: List[Discrepancy]
    counts_by_kind: Dict[str, int]
    counts_by_severity: Dict[str, int]
    fixed_count: int
    health_score: int

    @property
    def is_consistent(self) -> bool:
        return not any(d.severity != "info" for d in self.discrepancies)
