# backend/core/task_allocator.py
# 功能: 任务分配 - 给评估员领取下一个任务，并记录完成的评估
# 主要函数: get_next_parent_task(), record_parent_task_evaluation(), expire_stale_assignments()
# 数据结构: 无（操作 ParentTask / ParentTaskAssignment / ParentTaskEvaluation）
#
# 分配规则:
#   1. 过期预留（超过 assignment_ttl_minutes 未提交）标记为 expired
#   2. 评估员已持有本池的有效预留 → 原样返回（刷新页面不会多占一个名额）
#   3. 候选: 状态 active/returned_to_pipe，该评估员未评估过，
#      已完成次数 + 有效预留数 < max_repetitions + extra_repetitions
#   4. 排序: current_repetitions 升序 → created_at 升序 → id
#   5. Postgres 下候选查询加 FOR UPDATE SKIP LOCKED，并发领取不会拿到同一行

"""
任务分配器
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.config import settings
from core.errors import NotFoundError
from core.models import (
    ParentTask,
    ParentTaskAssignment,
    ParentTaskEvaluation,
    ASSIGNABLE_STATUSES,
    utcnow,
)

logger = logging.getLogger("task_allocator")


def expire_stale_assignments(db: Session, playground_id: str, now=None) -> int:
    """把超时未提交的预留标记为 expired，返回处理条数（调用者负责 commit）"""
    now = now or utcnow()
    count = db.query(ParentTaskAssignment).filter(
        ParentTaskAssignment.playground_id == playground_id,
        ParentTaskAssignment.status == "assigned",
        ParentTaskAssignment.expires_at <= now,
    ).update({"status": "expired"}, synchronize_session=False)
    if count:
        logger.info(f"[分配] 池 {playground_id} 过期预留 {count} 条")
    return count


def _held_task(db: Session, playground_id: str, user_id: str) -> Optional[ParentTaskAssignment]:
    return db.query(ParentTaskAssignment).join(
        ParentTask, ParentTask.id == ParentTaskAssignment.parent_task_id
    ).filter(
        ParentTaskAssignment.playground_id == playground_id,
        ParentTaskAssignment.user_id == user_id,
        ParentTaskAssignment.status == "assigned",
        ParentTask.status.in_(ASSIGNABLE_STATUSES),
    ).order_by(ParentTaskAssignment.assigned_at).first()


def get_next_parent_task(
    db: Session,
    playground_id: str,
    user_id: str,
    ttl_minutes: Optional[int] = None,
) -> Optional[ParentTask]:
    """
    为评估员领取下一个任务

    Returns:
        ParentTask 或 None（没有可分配的任务，不是错误）
    """
    now = utcnow()
    ttl = timedelta(minutes=ttl_minutes or settings.assignment_ttl_minutes)

    expire_stale_assignments(db, playground_id, now)

    held = _held_task(db, playground_id, user_id)
    if held:
        held.expires_at = now + ttl
        db.commit()
        return db.get(ParentTask, held.parent_task_id)

    live = (
        select(
            ParentTaskAssignment.parent_task_id.label("parent_task_id"),
            func.count(ParentTaskAssignment.id).label("reserved"),
        )
        .where(ParentTaskAssignment.status == "assigned")
        .group_by(ParentTaskAssignment.parent_task_id)
        .subquery()
    )
    already_evaluated = select(ParentTaskEvaluation.parent_task_id).where(
        ParentTaskEvaluation.user_id == user_id
    )

    query = db.query(ParentTask).outerjoin(
        live, live.c.parent_task_id == ParentTask.id
    ).filter(
        ParentTask.playground_id == playground_id,
        ParentTask.status.in_(ASSIGNABLE_STATUSES),
        ParentTask.id.not_in(already_evaluated),
        ParentTask.current_repetitions + func.coalesce(live.c.reserved, 0)
        < ParentTask.max_repetitions + ParentTask.extra_repetitions,
    ).order_by(
        ParentTask.current_repetitions.asc(),
        ParentTask.created_at.asc(),
        ParentTask.id.asc(),
    )

    if db.get_bind().dialect.name == "postgresql":
        query = query.with_for_update(of=ParentTask, skip_locked=True)

    task = query.first()
    if not task:
        db.commit()
        return None

    db.add(ParentTaskAssignment(
        parent_task_id=task.id,
        playground_id=playground_id,
        user_id=user_id,
        status="assigned",
        assigned_at=now,
        expires_at=now + ttl,
    ))
    db.commit()
    logger.info(f"[分配] 任务 {task.id[:8]}... → 用户 {user_id[:8]}...")
    return task


def record_parent_task_evaluation(
    db: Session,
    parent_task_id: str,
    user_id: str,
    session_id: str,
) -> ParentTaskEvaluation:
    """
    记录一次完整评估：插入关联行、current_repetitions + 1、完成该评估员的预留
    三步在同一事务内；不校验该评估员是否确实被分配过此任务
    """
    task = db.query(ParentTask).filter(ParentTask.id == parent_task_id).first()
    if not task:
        raise NotFoundError("Parent task not found")

    now = utcnow()
    try:
        evaluation = ParentTaskEvaluation(
            parent_task_id=parent_task_id,
            user_id=user_id,
            session_id=session_id,
            evaluated_at=now,
        )
        db.add(evaluation)

        # 数据库端自增，避免并发提交互相覆盖
        db.query(ParentTask).filter(ParentTask.id == parent_task_id).update(
            {"current_repetitions": ParentTask.current_repetitions + 1},
            synchronize_session=False,
        )

        assignment = db.query(ParentTaskAssignment).filter(
            ParentTaskAssignment.parent_task_id == parent_task_id,
            ParentTaskAssignment.user_id == user_id,
            ParentTaskAssignment.status == "assigned",
        ).order_by(ParentTaskAssignment.assigned_at).first()
        if assignment:
            assignment.status = "completed"
            assignment.completed_at = now

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(evaluation)
    logger.info(f"[评估] 任务 {parent_task_id[:8]}... 记录评估 session={session_id}")
    return evaluation
