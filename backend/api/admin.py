# backend/api/admin.py
# 功能: 管理后台 API - 评估池与用户管理
# 主要端点:
#   GET/POST   /admin/playgrounds                            - 列表 / 创建
#   GET/PUT    /admin/playgrounds/{id}                       - 详情（含问题）/ 修改
#   DELETE     /admin/playgrounds/{id}                       - 停用
#   POST       /admin/playgrounds/{id}/authorized-users      - 显式授权
#   DELETE     /admin/playgrounds/{id}/authorized-users/{uid}- 撤销授权
#   GET        /admin/users                                  - 用户列表
#   PUT        /admin/users/{id}/role                        - 修改角色
#   POST       /admin/users/{id}/block | /unblock            - 封禁 / 解封
#   POST       /admin/users/invite                           - 邀请用户

"""
Admin API
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel as PydanticBase
from sqlalchemy.orm import Session

from core.config import settings
from core.database import get_db
from core.errors import NotFoundError, WorkflowValidationError
from core.models import Playground, PlaygroundAuthorizedUser, User, USER_ROLES, utcnow
from core.permissions import require_permission
from core.playground_service import (
    authorize_user,
    create_playground,
    deactivate_playground,
    revoke_user,
    update_playground,
)

logger = logging.getLogger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])


# ============== Schemas ==============

class QuestionPayload(PydanticBase):
    question_text: str
    question_type: str = "select"
    options: Optional[list] = None
    order_index: Optional[int] = None
    required: bool = True


class PlaygroundCreate(PydanticBase):
    name: str
    type: str = "data_labeling"
    description: Optional[str] = None
    support_text: Optional[str] = None
    access_control_type: str = "open"
    restricted_emails: Optional[List[str]] = None
    evaluation_goal: Optional[int] = None
    repetitions_per_task: Optional[int] = 1
    auto_calculate_evaluations: bool = False
    questions: List[QuestionPayload] = []


class PlaygroundUpdate(PydanticBase):
    name: Optional[str] = None
    type: Optional[str] = None
    description: Optional[str] = None
    support_text: Optional[str] = None
    is_active: Optional[bool] = None
    access_control_type: Optional[str] = None
    restricted_emails: Optional[List[str]] = None
    evaluation_goal: Optional[int] = None
    repetitions_per_task: Optional[int] = None
    auto_calculate_evaluations: Optional[bool] = None
    questions: Optional[List[QuestionPayload]] = None


class AuthorizeUserRequest(PydanticBase):
    user_id: str
    notes: Optional[str] = None


class RoleUpdate(PydanticBase):
    role: str


class BlockRequest(PydanticBase):
    reason: Optional[str] = None


class InviteRequest(PydanticBase):
    email: str
    role: str = "tester"
    full_name: Optional[str] = None


def _questions_payload(questions) -> list:
    result = []
    for index, q in enumerate(questions):
        item = q.model_dump()
        if item.get("order_index") is None:
            item["order_index"] = index
        result.append(item)
    return result


def _playground_detail(playground: Playground) -> dict:
    data = playground.to_dict()
    data["questions"] = [q.to_dict() for q in playground.questions]
    return data


# ============== Playgrounds ==============

@router.get("/playgrounds")
def list_playgrounds(
    user: User = Depends(require_permission("pool.manage")),
    db: Session = Depends(get_db),
):
    playgrounds = db.query(Playground).order_by(Playground.created_at.desc()).all()
    return {"data": [p.to_dict() for p in playgrounds]}


@router.post("/playgrounds", status_code=201)
def create_playground_endpoint(
    data: PlaygroundCreate,
    user: User = Depends(require_permission("pool.manage")),
    db: Session = Depends(get_db),
):
    values = data.model_dump(exclude={"questions"})
    try:
        playground = create_playground(db, values, _questions_payload(data.questions), user.id)
    except WorkflowValidationError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    return {"data": _playground_detail(playground), "message": "Playground created successfully"}


@router.get("/playgrounds/{playground_id}")
def get_playground(
    playground_id: str,
    user: User = Depends(require_permission("pool.manage")),
    db: Session = Depends(get_db),
):
    playground = db.query(Playground).filter(Playground.id == playground_id).first()
    if not playground:
        raise HTTPException(status_code=404, detail="Playground not found")

    detail = _playground_detail(playground)
    grants = db.query(PlaygroundAuthorizedUser).filter(
        PlaygroundAuthorizedUser.playground_id == playground_id
    ).all()
    detail["authorized_users"] = [g.to_dict() for g in grants]
    return {"data": detail}


@router.put("/playgrounds/{playground_id}")
def update_playground_endpoint(
    playground_id: str,
    data: PlaygroundUpdate,
    user: User = Depends(require_permission("pool.manage")),
    db: Session = Depends(get_db),
):
    values = data.model_dump(exclude={"questions"}, exclude_unset=True)
    questions = _questions_payload(data.questions) if data.questions is not None else None
    try:
        playground = update_playground(db, playground_id, values, questions)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowValidationError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    return {"data": _playground_detail(playground)}


@router.delete("/playgrounds/{playground_id}")
def delete_playground(
    playground_id: str,
    user: User = Depends(require_permission("pool.manage")),
    db: Session = Depends(get_db),
):
    try:
        deactivate_playground(db, playground_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"message": "Playground deactivated"}


@router.post("/playgrounds/{playground_id}/authorized-users")
def add_authorized_user(
    playground_id: str,
    data: AuthorizeUserRequest,
    user: User = Depends(require_permission("pool.manage")),
    db: Session = Depends(get_db),
):
    try:
        grant = authorize_user(db, playground_id, data.user_id, user.id, data.notes)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"data": grant.to_dict()}


@router.delete("/playgrounds/{playground_id}/authorized-users/{user_id}")
def remove_authorized_user(
    playground_id: str,
    user_id: str,
    user: User = Depends(require_permission("pool.manage")),
    db: Session = Depends(get_db),
):
    try:
        revoke_user(db, playground_id, user_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"message": "Authorization removed"}


# ============== Users ==============

def _get_user(db: Session, user_id: str) -> User:
    target = db.query(User).filter(User.id == user_id).first()
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    return target


@router.get("/users")
def list_users(
    user: User = Depends(require_permission("user.manage")),
    db: Session = Depends(get_db),
):
    users = db.query(User).order_by(User.created_at.desc()).all()
    return {"data": [u.to_dict() for u in users]}


@router.put("/users/{user_id}/role")
def update_role(
    user_id: str,
    data: RoleUpdate,
    user: User = Depends(require_permission("user.manage")),
    db: Session = Depends(get_db),
):
    if data.role not in USER_ROLES:
        raise HTTPException(status_code=400, detail=f"Invalid role: {data.role}")
    target = _get_user(db, user_id)
    target.role = data.role
    db.commit()
    logger.info(f"[用户] {user.email} 将 {target.email} 角色改为 {data.role}")
    return {"data": target.to_dict()}


@router.post("/users/{user_id}/block")
def block_user(
    user_id: str,
    data: BlockRequest,
    user: User = Depends(require_permission("user.manage")),
    db: Session = Depends(get_db),
):
    if user_id == user.id:
        raise HTTPException(status_code=400, detail="Cannot block yourself")
    target = _get_user(db, user_id)
    target.status = "blocked"
    target.blocked_at = utcnow()
    target.blocked_by = user.id
    target.blocked_reason = data.reason
    db.commit()
    logger.info(f"[用户] {user.email} 封禁 {target.email}")
    return {"data": target.to_dict()}


@router.post("/users/{user_id}/unblock")
def unblock_user(
    user_id: str,
    user: User = Depends(require_permission("user.manage")),
    db: Session = Depends(get_db),
):
    target = _get_user(db, user_id)
    target.status = "active"
    target.blocked_at = None
    target.blocked_by = None
    target.blocked_reason = None
    db.commit()
    return {"data": target.to_dict()}


@router.post("/users/invite", status_code=201)
def invite_user(
    data: InviteRequest,
    user: User = Depends(require_permission("user.manage")),
    db: Session = Depends(get_db),
):
    email = data.email.strip().lower()
    domain = settings.allowed_email_domain.lower()
    if "@" not in email or email.rsplit("@", 1)[1] != domain:
        raise HTTPException(status_code=400, detail=f"Email must be from domain {domain}")
    if data.role not in USER_ROLES:
        raise HTTPException(status_code=400, detail=f"Invalid role: {data.role}")
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=400, detail="User already exists")

    invited = User(
        email=email,
        full_name=data.full_name,
        role=data.role,
        status="pending_invite",
        invited_at=utcnow(),
        invited_by=user.id,
    )
    db.add(invited)
    db.commit()
    logger.info(f"[用户] {user.email} 邀请 {email} ({data.role})")
    return {"data": invited.to_dict()}
