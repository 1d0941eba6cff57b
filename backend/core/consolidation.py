# backend/core/consolidation.py
# 功能: 合并引擎 - 管理员对一个任务的所有评估做最终决定
# 主要函数:
#   consolidate_parent_task()      - 提交权威答案，状态 → consolidated
#   ignore_parent_task()           - 从数据集中排除，状态 → ignored（必须给出原因）
#   return_parent_task_to_pipe()   - 追加重复次数，状态 → returned_to_pipe
#   deconsolidate_parent_task()    - consolidated → active，删除全部权威答案
#   get_consolidation_data()       - 任务 + 全部评估（按 session 汇总答案）
# 数据结构: AnswerInput (dataclass)
#
# 每个状态变更都在一个事务内完成：任一步失败整体回滚，
# 不会出现“状态已变但答案没写/没删”的中间态

"""
合并引擎
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from core.errors import NotFoundError, WorkflowValidationError
from core.models import (
    ConsolidatedAnswer,
    Evaluation,
    ParentTask,
    ParentTaskEvaluation,
    Playground,
    Question,
    User,
    utcnow,
)

logger = logging.getLogger("consolidation")


CONSOLIDATION_ACTIONS = ("consolidate", "ignore", "return_to_pipe")


@dataclass
class AnswerInput:
    """一条待提交的权威答案"""
    question_id: str
    answer_value: Optional[str] = None
    answer_text: Optional[str] = None
    source_evaluation_id: Optional[str] = None


def _blank_to_none(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def normalize_answers(raw: Optional[Iterable]) -> List[AnswerInput]:
    """
    校验并规范化 consolidated_answers

    - 必须是非空列表
    - 每项必须有 question_id，且 answer_value / answer_text 至少一个非空
    - 同一次提交中 question_id 不可重复
    """
    if not isinstance(raw, list) or not raw:
        raise WorkflowValidationError("consolidated_answers array is required for consolidation")

    answers: List[AnswerInput] = []
    seen = set()
    for index, item in enumerate(raw):
        if isinstance(item, AnswerInput):
            entry = item
        elif isinstance(item, dict):
            entry = AnswerInput(
                question_id=item.get("question_id"),
                answer_value=item.get("answer_value"),
                answer_text=item.get("answer_text"),
                source_evaluation_id=item.get("source_evaluation_id"),
            )
        else:
            raise WorkflowValidationError(f"consolidated_answers[{index}] must be an object")

        if not entry.question_id:
            raise WorkflowValidationError(f"consolidated_answers[{index}].question_id is required")
        if not isinstance(entry.question_id, str):
            raise WorkflowValidationError(f"consolidated_answers[{index}].question_id must be a string")
        if entry.question_id in seen:
            raise WorkflowValidationError(f"Duplicate question_id {entry.question_id}")

        value = _blank_to_none(entry.answer_value)
        text = _blank_to_none(entry.answer_text)
        if value is None and text is None:
            raise WorkflowValidationError(
                f"consolidated_answers[{index}] needs answer_value or answer_text"
            )

        seen.add(entry.question_id)
        answers.append(AnswerInput(
            question_id=entry.question_id,
            answer_value=value,
            answer_text=text,
            source_evaluation_id=entry.source_evaluation_id or None,
        ))
    return answers


def _get_task(db: Session, parent_task_id: str) -> ParentTask:
    task = db.query(ParentTask).filter(ParentTask.id == parent_task_id).first()
    if not task:
        raise NotFoundError("Parent task not found")
    return task


def consolidate_parent_task(
    db: Session,
    parent_task_id: str,
    answers: list,
    admin_id: str,
    admin_notes: Optional[str] = None,
) -> ParentTask:
    """
    提交权威答案

    可从 active / returned_to_pipe / ignored 进入；对已合并任务再次调用会按
    (任务, 问题) 覆盖已有答案，不会产生重复行
    """
    entries = normalize_answers(answers)
    task = _get_task(db, parent_task_id)

    question_ids = [e.question_id for e in entries]
    valid_ids = {
        qid for (qid,) in db.query(Question.id).filter(
            Question.playground_id == task.playground_id,
            Question.id.in_(question_ids),
        ).all()
    }
    unknown = [qid for qid in question_ids if qid not in valid_ids]
    if unknown:
        raise WorkflowValidationError(f"Unknown question_id for this playground: {', '.join(unknown)}")

    now = utcnow()
    previous_status = task.status
    try:
        task.status = "consolidated"
        task.consolidated_at = now
        task.consolidated_by = admin_id
        task.admin_notes = admin_notes or None
        task.ignore_reason = None

        existing = {
            row.question_id: row
            for row in db.query(ConsolidatedAnswer).filter(
                ConsolidatedAnswer.parent_task_id == task.id,
                ConsolidatedAnswer.question_id.in_(question_ids),
            ).all()
        }
        for entry in entries:
            row = existing.get(entry.question_id)
            if row is None:
                row = ConsolidatedAnswer(parent_task_id=task.id, question_id=entry.question_id)
                db.add(row)
            row.answer_value = entry.answer_value
            row.answer_text = entry.answer_text
            row.source_evaluation_id = entry.source_evaluation_id
            row.consolidated_by = admin_id
            row.consolidated_at = now

        db.commit()
    except Exception:
        db.rollback()
        logger.exception(f"[合并] 任务 {parent_task_id} 合并失败，已回滚")
        raise

    db.refresh(task)
    logger.info(
        f"[合并] 任务 {task.id[:8]}... {previous_status} → consolidated ({len(entries)} 个答案)"
    )
    return task


def ignore_parent_task(
    db: Session,
    parent_task_id: str,
    reason: Optional[str],
    admin_id: str,
) -> ParentTask:
    """排除任务（不进入数据集），原因必填"""
    if reason is None or not str(reason).strip():
        raise WorkflowValidationError("ignore_reason is required when ignoring a task")

    task = _get_task(db, parent_task_id)
    if task.status == "consolidated":
        raise WorkflowValidationError("Task is consolidated; deconsolidate it before ignoring")

    try:
        task.status = "ignored"
        task.ignore_reason = str(reason).strip()
        task.consolidated_at = utcnow()
        task.consolidated_by = admin_id
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(f"[合并] 任务 {parent_task_id} 忽略失败，已回滚")
        raise

    db.refresh(task)
    logger.info(f"[合并] 任务 {task.id[:8]}... → ignored")
    return task


def return_parent_task_to_pipe(
    db: Session,
    parent_task_id: str,
    extra_repetitions,
    admin_id: str,
    admin_notes: Optional[str] = None,
) -> ParentTask:
    """
    退回任务池并追加 extra_repetitions 次评估

    extra_repetitions 校验先于任何数据库读写
    """
    if isinstance(extra_repetitions, bool) or not isinstance(extra_repetitions, int) or extra_repetitions < 1:
        raise WorkflowValidationError("extra_repetitions must be at least 1")

    task = _get_task(db, parent_task_id)
    if task.status == "consolidated":
        raise WorkflowValidationError("Task is consolidated; deconsolidate it before returning to pipe")

    try:
        task.extra_repetitions = (task.extra_repetitions or 0) + extra_repetitions
        task.status = "returned_to_pipe"
        task.admin_notes = admin_notes or None
        task.ignore_reason = None
        task.consolidated_at = None
        task.consolidated_by = None

        db.query(Playground).filter(Playground.id == task.playground_id).update(
            {"has_returned_tasks": True}, synchronize_session=False
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(f"[合并] 任务 {parent_task_id} 退回失败，已回滚")
        raise

    db.refresh(task)
    logger.info(
        f"[合并] 任务 {task.id[:8]}... → returned_to_pipe (+{extra_repetitions}，by {admin_id[:8]}...)"
    )
    return task


def deconsolidate_parent_task(db: Session, parent_task_id: str) -> ParentTask:
    """撤销合并：删除全部权威答案，状态回到 active"""
    task = _get_task(db, parent_task_id)
    if task.status != "consolidated":
        raise WorkflowValidationError("Task is not consolidated")

    try:
        deleted = db.query(ConsolidatedAnswer).filter(
            ConsolidatedAnswer.parent_task_id == task.id
        ).delete(synchronize_session=False)

        task.status = "active"
        task.consolidated_at = None
        task.consolidated_by = None
        task.admin_notes = None
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(f"[合并] 任务 {parent_task_id} 撤销合并失败，已回滚")
        raise

    db.refresh(task)
    logger.info(f"[合并] 任务 {task.id[:8]}... consolidated → active (删除 {deleted} 个答案)")
    return task


def get_consolidation_data(db: Session, parent_task_id: str) -> dict:
    """任务详情 + 每次评估的答案 + 当前权威答案"""
    task = _get_task(db, parent_task_id)

    questions = {
        q.id: q for q in db.query(Question).filter(
            Question.playground_id == task.playground_id
        ).all()
    }

    records = db.query(ParentTaskEvaluation, User).outerjoin(
        User, User.id == ParentTaskEvaluation.user_id
    ).filter(
        ParentTaskEvaluation.parent_task_id == task.id
    ).order_by(ParentTaskEvaluation.evaluated_at.asc()).all()

    evaluations = []
    for record, user in records:
        rows = db.query(Evaluation).filter(
            Evaluation.session_id == record.session_id,
            Evaluation.parent_task_id == task.id,
            Evaluation.user_id == record.user_id,
        ).all()
        rows.sort(key=lambda r: questions[r.question_id].order_index if r.question_id in questions else 0)

        answers = []
        for row in rows:
            question = questions.get(row.question_id)
            answers.append({
                "evaluation_id": row.id,
                "question_id": row.question_id,
                "question_text": question.question_text if question else "",
                "question_type": question.question_type if question else None,
                "answer_value": row.answer_value,
                "answer_text": row.answer_text,
                "answer": row.answer_value or row.answer_text or "",
                "is_correct": None,
            })

        evaluations.append({
            "id": record.id,
            "user_id": record.user_id,
            "user_email": user.email if user else None,
            "user_name": user.full_name if user else None,
            "evaluated_at": record.evaluated_at.isoformat() if record.evaluated_at else None,
            "session_id": record.session_id,
            "answers": answers,
        })

    consolidated = db.query(ConsolidatedAnswer).filter(
        ConsolidatedAnswer.parent_task_id == task.id
    ).all()

    data = task.to_dict()
    data["evaluations"] = evaluations
    data["consolidated_answers"] = [a.to_dict() for a in consolidated]
    return data
