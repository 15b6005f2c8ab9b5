# app/schemas/admin.py
from typing import List, Literal
from pydantic import BaseModel

JobName = Literal["recompute_rankings", "verify_consistency", "monthly_reset"]


class TaskInfo(BaseModel):
    """One scheduled job that can also be run by hand."""
    task_name: JobName
    description: str


class TaskRunRequest(BaseModel):
    task_name: JobName | Literal["all"]


class TaskRunAccepted(BaseModel):
    status: Literal["accepted"] = "accepted"
    scheduled: List[JobName]
