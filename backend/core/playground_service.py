# backend/core/playground_service.py
# 功能: 评估池的创建/修改/授权，以及 evaluation_goal 自动计算
# 主要函数:
#   create_playground(), update_playground(), deactivate_playground()
#   recalculate_evaluation_goal()  - 任务数 × 每任务重复次数
#   authorize_user(), revoke_user()
#   save_evaluations()             - 评估员提交一次答案（每个问题一行 Evaluation）
# 数据结构: 无（操作 Playground / Question / PlaygroundAuthorizedUser / Evaluation）

"""
评估池服务
调用者负责 commit 之外的 HTTP 映射；本模块只抛 core.errors 中的异常
"""

import logging
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.errors import NotFoundError, WorkflowValidationError
from core.models import (
    ACCESS_CONTROL_TYPES,
    PLAYGROUND_TYPES,
    QUESTION_TYPES,
    ConsolidatedAnswer,
    Evaluation,
    ParentTask,
    Playground,
    PlaygroundAuthorizedUser,
    Question,
    User,
)

logger = logging.getLogger("playground_service")


PLAYGROUND_FIELDS = (
    "name",
    "type",
    "description",
    "support_text",
    "is_active",
    "access_control_type",
    "restricted_emails",
    "evaluation_goal",
    "repetitions_per_task",
    "auto_calculate_evaluations",
)


def _validate(values: dict) -> None:
    if "type" in values and values["type"] not in PLAYGROUND_TYPES:
        raise WorkflowValidationError(f"Invalid playground type: {values['type']}")
    if "access_control_type" in values and values["access_control_type"] not in ACCESS_CONTROL_TYPES:
        raise WorkflowValidationError(f"Invalid access_control_type: {values['access_control_type']}")
    reps = values.get("repetitions_per_task")
    if reps is not None and reps < 1:
        raise WorkflowValidationError("repetitions_per_task must be at least 1")


def _build_questions(playground_id: str, questions: List[dict]) -> List[Question]:
    built = []
    for index, q in enumerate(questions):
        text = (q.get("question_text") or "").strip()
        if not text:
            raise WorkflowValidationError(f"questions[{index}].question_text is required")
        qtype = q.get("question_type") or "select"
        if qtype not in QUESTION_TYPES:
            raise WorkflowValidationError(f"Invalid question_type: {qtype}")
        options = q.get("options") if qtype == "select" else None
        if qtype == "select" and not options:
            raise WorkflowValidationError(f"questions[{index}] of type select needs options")
        built.append(Question(
            playground_id=playground_id,
            question_text=text,
            question_type=qtype,
            options=options,
            order_index=q.get("order_index", index),
            required=q.get("required", True),
        ))
    return built


def recalculate_evaluation_goal(db: Session, playground: Playground) -> int:
    """auto_calculate_evaluations 开启时: evaluation_goal = 任务数 × 每任务重复次数（不 commit）"""
    if playground.type != "data_labeling" or not playground.auto_calculate_evaluations:
        return playground.evaluation_goal or 0

    task_count = db.query(func.count(ParentTask.id)).filter(
        ParentTask.playground_id == playground.id
    ).scalar() or 0
    playground.evaluation_goal = task_count * playground.effective_repetitions
    logger.info(
        f"[评估池] {playground.id[:8]}... evaluation_goal → {playground.evaluation_goal} "
        f"({task_count} × {playground.effective_repetitions})"
    )
    return playground.evaluation_goal


def create_playground(db: Session, values: dict, questions: List[dict], created_by: str) -> Playground:
    _validate(values)
    if not (values.get("name") or "").strip():
        raise WorkflowValidationError("name is required")

    playground = Playground(
        created_by=created_by,
        **{k: v for k, v in values.items() if k in PLAYGROUND_FIELDS and v is not None},
    )
    db.add(playground)
    db.flush()

    for question in _build_questions(playground.id, questions or []):
        db.add(question)

    recalculate_evaluation_goal(db, playground)
    db.commit()
    db.refresh(playground)
    logger.info(f"[评估池] 创建 {playground.name} ({playground.type})")
    return playground


def update_playground(
    db: Session,
    playground_id: str,
    values: dict,
    questions: Optional[List[dict]] = None,
) -> Playground:
    """
    修改评估池；questions 不为 None 时整体替换问题列表
    已有评估或合并答案的池不允许替换问题
    """
    playground = db.query(Playground).filter(Playground.id == playground_id).first()
    if not playground:
        raise NotFoundError("Playground not found")

    _validate(values)
    for key, value in values.items():
        if key in PLAYGROUND_FIELDS and value is not None:
            setattr(playground, key, value)

    if questions is not None:
        question_ids = select_question_ids(db, playground_id)
        answered = question_ids and (
            db.query(Evaluation.id).filter(Evaluation.question_id.in_(question_ids)).first()
            or db.query(ConsolidatedAnswer.id).filter(ConsolidatedAnswer.question_id.in_(question_ids)).first()
        )
        if answered:
            raise WorkflowValidationError("Questions cannot be replaced after answers exist")
        playground.questions.clear()
        db.flush()
        for question in _build_questions(playground.id, questions):
            playground.questions.append(question)

    recalculate_evaluation_goal(db, playground)
    db.commit()
    db.refresh(playground)
    return playground


def select_question_ids(db: Session, playground_id: str) -> List[str]:
    return [qid for (qid,) in db.query(Question.id).filter(Question.playground_id == playground_id).all()]


def deactivate_playground(db: Session, playground_id: str) -> Playground:
    """停用（不删除数据）"""
    playground = db.query(Playground).filter(Playground.id == playground_id).first()
    if not playground:
        raise NotFoundError("Playground not found")
    playground.is_active = False
    db.commit()
    logger.info(f"[评估池] 停用 {playground.id[:8]}...")
    return playground


def authorize_user(
    db: Session,
    playground_id: str,
    user_id: str,
    authorized_by: str,
    notes: Optional[str] = None,
) -> PlaygroundAuthorizedUser:
    if not db.query(Playground.id).filter(Playground.id == playground_id).first():
        raise NotFoundError("Playground not found")
    if not db.query(User.id).filter(User.id == user_id).first():
        raise NotFoundError("User not found")

    grant = db.query(PlaygroundAuthorizedUser).filter(
        PlaygroundAuthorizedUser.playground_id == playground_id,
        PlaygroundAuthorizedUser.user_id == user_id,
    ).first()
    if grant:
        grant.notes = notes or grant.notes
    else:
        grant = PlaygroundAuthorizedUser(
            playground_id=playground_id,
            user_id=user_id,
            authorized_by=authorized_by,
            notes=notes,
        )
        db.add(grant)
    db.commit()
    db.refresh(grant)
    return grant


def revoke_user(db: Session, playground_id: str, user_id: str) -> None:
    deleted = db.query(PlaygroundAuthorizedUser).filter(
        PlaygroundAuthorizedUser.playground_id == playground_id,
        PlaygroundAuthorizedUser.user_id == user_id,
    ).delete(synchronize_session=False)
    if not deleted:
        raise NotFoundError("Authorization not found")
    db.commit()


def save_evaluations(
    db: Session,
    playground: Playground,
    user: User,
    session_id: str,
    answers: List[dict],
    parent_task_id: Optional[str] = None,
) -> List[Evaluation]:
    """
    保存一次提交的全部答案（同一 session_id）

    - 每个答案必须指向本池的问题
    - 必答问题缺失 → WorkflowValidationError
    - data_labeling 池必须带 parent_task_id，且任务属于本池
    """
    if not session_id:
        raise WorkflowValidationError("session_id is required")

    if playground.type == "data_labeling":
        if not parent_task_id:
            raise WorkflowValidationError("parent_task_id is required for data labeling")
        task = db.query(ParentTask).filter(
            ParentTask.id == parent_task_id,
            ParentTask.playground_id == playground.id,
        ).first()
        if not task:
            raise NotFoundError("Parent task not found")

    questions = {q.id: q for q in playground.questions}
    answered = {}
    for index, answer in enumerate(answers or []):
        question_id = answer.get("question_id")
        if question_id not in questions:
            raise WorkflowValidationError(f"answers[{index}].question_id does not belong to this playground")
        value = answer.get("answer_value")
        text = answer.get("answer_text")
        if (value is None or str(value).strip() == "") and (text is None or str(text).strip() == ""):
            continue
        answered[question_id] = answer

    missing = [q.question_text for q in questions.values() if q.required and q.id not in answered]
    if missing:
        raise WorkflowValidationError(f"Missing answers for required questions: {', '.join(missing)}")

    rows = []
    for question_id, answer in answered.items():
        row = Evaluation(
            playground_id=playground.id,
            user_id=user.id,
            question_id=question_id,
            parent_task_id=parent_task_id,
            session_id=session_id,
            model_key=answer.get("model_key"),
            answer_value=None if answer.get("answer_value") is None else str(answer["answer_value"]),
            answer_text=answer.get("answer_text"),
            time_spent_seconds=answer.get("time_spent_seconds"),
        )
        db.add(row)
        rows.append(row)

    db.commit()
    logger.info(f"[评估] {user.email} 提交 {len(rows)} 个答案 (session={session_id})")
    return rows
