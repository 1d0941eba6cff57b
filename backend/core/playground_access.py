# backend/core/playground_access.py
# 功能: 判断用户能否进入某个评估池
# 主要函数: user_has_playground_access()
# 数据结构: AccessDecision (dataclass)
#
# 规则:
#   - admin 永远可以
#   - 池不存在 / 已停用 → 拒绝
#   - client 必须显式授权（即使池是 open）
#   - 其它角色按 access_control_type: open / email_restricted / explicit_authorization

"""
评估池访问控制
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from core.models import Playground, PlaygroundAuthorizedUser, User


@dataclass
class AccessDecision:
    """访问判定结果"""
    has_access: bool
    reason: str
    playground: Optional[Playground] = None


def _explicit(db: Session, user: User, playground: Playground) -> AccessDecision:
    grant = db.query(PlaygroundAuthorizedUser).filter(
        PlaygroundAuthorizedUser.playground_id == playground.id,
        PlaygroundAuthorizedUser.user_id == user.id,
    ).first()
    if grant:
        return AccessDecision(True, "explicitly_authorized", playground)
    return AccessDecision(False, "not_authorized", playground)


def user_has_playground_access(db: Session, user: User, playground_id: str) -> AccessDecision:
    """判断 user 能否访问 playground_id"""
    playground = db.query(Playground).filter(Playground.id == playground_id).first()

    if user.role == "admin":
        return AccessDecision(True, "admin", playground)

    if not playground:
        return AccessDecision(False, "playground_not_found")

    if not playground.is_active:
        return AccessDecision(False, "playground_inactive", playground)

    if user.role == "client":
        return _explicit(db, user, playground)

    access_type = playground.access_control_type or "open"
    if access_type == "open":
        return AccessDecision(True, "open_access", playground)
    if access_type == "email_restricted":
        if user.email in (playground.restricted_emails or []):
            return AccessDecision(True, "email_allowed", playground)
        return AccessDecision(False, "email_not_allowed", playground)
    if access_type == "explicit_authorization":
        return _explicit(db, user, playground)

    return AccessDecision(False, "unknown_access_control", playground)
