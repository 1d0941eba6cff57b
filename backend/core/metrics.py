# backend/core/metrics.py
# 功能: Data labeling 进度统计（每次调用全量重算，不缓存）
# 主要函数: get_data_labeling_metrics(), get_task_metrics()

"""
进度统计
"""

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from core.errors import NotFoundError
from core.models import ParentTask, Playground


def _percentage(done: int, expected: int, ndigits=None):
    if not expected:
        return 0
    return round(done / expected * 100, ndigits)


def get_data_labeling_metrics(db: Session, playground_id: str) -> dict:
    """池级统计"""
    playground = db.query(Playground).filter(Playground.id == playground_id).first()
    if not playground:
        raise NotFoundError("Playground not found")

    def _count(status: str):
        return func.coalesce(func.sum(case((ParentTask.status == status, 1), else_=0)), 0)

    row = db.query(
        func.count(ParentTask.id),
        _count("active"),
        _count("consolidated"),
        _count("returned_to_pipe"),
        _count("ignored"),
        func.coalesce(func.sum(ParentTask.max_repetitions + ParentTask.extra_repetitions), 0),
        func.coalesce(func.sum(ParentTask.current_repetitions), 0),
    ).filter(ParentTask.playground_id == playground_id).one()

    total, active, consolidated, returned, ignored, expected, completed = (int(v or 0) for v in row)

    return {
        "playground_id": playground_id,
        "total_parent_tasks": total,
        "active_parent_tasks": active,
        "consolidated_parent_tasks": consolidated,
        "returned_parent_tasks": returned,
        "ignored_parent_tasks": ignored,
        "total_expected_evaluations": expected,
        "completed_evaluations": completed,
        "completion_percentage": _percentage(completed, expected, 2),
        "has_returned_tasks": bool(playground.has_returned_tasks),
    }


def get_task_metrics(task: ParentTask) -> dict:
    """单任务进度"""
    total = task.total_repetitions
    return {
        "parent_task_id": task.id,
        "status": task.status,
        "max_repetitions": task.max_repetitions,
        "extra_repetitions": task.extra_repetitions,
        "current_repetitions": task.current_repetitions,
        "total_repetitions": total,
        "completion_percentage": _percentage(task.current_repetitions or 0, total),
        "evaluations_count": task.current_repetitions or 0,
    }
