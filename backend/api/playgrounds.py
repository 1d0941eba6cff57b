# backend/api/playgrounds.py
# 功能: 评估员侧的评估池 API
# 主要端点:
#   GET  /playgrounds                     - 当前用户可访问的活跃评估池
#   GET  /playgrounds/{id}                - 评估池详情 + 有序问题
#   POST /playgrounds/{id}/evaluations    - 提交一次评估（同一 session 的全部答案）

"""
Playgrounds API（评估员）
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel as PydanticBase
from sqlalchemy.orm import Session

from core.database import get_db
from core.errors import NotFoundError, WorkflowValidationError
from core.models import Playground, User
from core.permissions import require_permission
from core.playground_access import user_has_playground_access
from core.playground_service import save_evaluations

logger = logging.getLogger("playgrounds")

router = APIRouter(prefix="/playgrounds", tags=["playgrounds"])


class AnswerPayload(PydanticBase):
    question_id: str
    answer_value: Optional[str] = None
    answer_text: Optional[str] = None
    model_key: Optional[str] = None
    time_spent_seconds: Optional[int] = None


class EvaluationSubmit(PydanticBase):
    session_id: str
    parent_task_id: Optional[str] = None
    answers: List[AnswerPayload] = []


def _require_access(db: Session, user: User, playground_id: str) -> Playground:
    decision = user_has_playground_access(db, user, playground_id)
    if decision.playground is None:
        raise HTTPException(status_code=404, detail="Playground not found")
    if not decision.has_access:
        raise HTTPException(status_code=403, detail="Access denied to this playground")
    return decision.playground


@router.get("")
def list_playgrounds(
    user: User = Depends(require_permission("pool.evaluate")),
    db: Session = Depends(get_db),
):
    playgrounds = db.query(Playground).filter(
        Playground.is_active == True  # noqa: E712
    ).order_by(Playground.created_at.desc()).all()

    visible = [
        p for p in playgrounds
        if user_has_playground_access(db, user, p.id).has_access
    ]
    return {"data": [p.to_dict() for p in visible]}


@router.get("/{playground_id}")
def get_playground(
    playground_id: str,
    user: User = Depends(require_permission("pool.evaluate")),
    db: Session = Depends(get_db),
):
    playground = _require_access(db, user, playground_id)
    data = playground.to_dict()
    data["questions"] = [q.to_dict() for q in playground.questions]
    return {"data": data}


@router.post("/{playground_id}/evaluations", status_code=201)
def submit_evaluations(
    playground_id: str,
    data: EvaluationSubmit,
    user: User = Depends(require_permission("pool.evaluate")),
    db: Session = Depends(get_db),
):
    playground = _require_access(db, user, playground_id)
    try:
        rows = save_evaluations(
            db,
            playground,
            user,
            data.session_id,
            [a.model_dump() for a in data.answers],
            parent_task_id=data.parent_task_id,
        )
    except WorkflowValidationError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {"data": [r.to_dict() for r in rows], "message": "Evaluation submitted successfully"}
