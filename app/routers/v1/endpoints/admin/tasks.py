# app/routers/v1/endpoints/admin/tasks.py

import logging
from typing import List
from fastapi import APIRouter, BackgroundTasks, status

from app.schemas.admin import TaskInfo, TaskRunAccepted, TaskRunRequest
from app.tasks_registry import TASKS, get_tasks_list

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=List[TaskInfo])
def list_ledger_jobs():
    """[ADMIN] Scheduled ledger jobs that can also be started by hand."""
    return get_tasks_list()


@router.post("/run", response_model=TaskRunAccepted, status_code=status.HTTP_202_ACCEPTED)
async def run_ledger_job(request_data: TaskRunRequest, background_tasks: BackgroundTasks):
    """
    [ADMIN] Queues a job (or every job) to run after the response is sent.
    Jobs run in registry order: rankings first, so the verifier sees fresh ranks.
    """
    names = list(TASKS) if request_data.task_name == "all" else [request_data.task_name]
    for name in names:
        background_tasks.add_task(TASKS[name]["function"])
    logger.info(f"Ledger jobs queued by admin: {', '.join(names)}")
    return TaskRunAccepted(scheduled=names)
