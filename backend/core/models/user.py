# backend/core/models/user.py
# 功能: 用户模型 + 登录验证码
# 主要类: User, LoginCode
# 数据结构:
#   - role: admin / manager / tester / client / qa
#   - status: active / pending_invite / blocked / pending_approval

"""
用户模型
角色决定可执行的操作（见 core/permissions.py），状态决定账号是否可用
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, DateTime, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from core.models.base import BaseModel


USER_ROLES = {
    "admin": "管理员",
    "manager": "经理",
    "tester": "测试员",
    "client": "客户",
    "qa": "QA 评估员",
}

USER_STATUS = {
    "active": "正常",
    "pending_invite": "已邀请未登录",
    "blocked": "已封禁",
    "pending_approval": "待审批",
}

# 这些状态的账号不能通过访问控制
DISABLED_STATUSES = {"blocked", "pending_approval"}


class User(BaseModel):
    """平台用户"""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default="tester", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)

    invited_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    invited_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    blocked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    blocked_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    blocked_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def is_disabled(self) -> bool:
        return self.status in DISABLED_STATUSES


class LoginCode(BaseModel):
    """邮箱一次性验证码（6 位数字，过期或使用后失效）"""

    __tablename__ = "login_codes"

    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(6), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, default=False)
