# backend/core/security.py
# 功能: 访问控制入口 - JWT 签发/校验 + 当前用户依赖
# 主要函数: create_access_token(), decode_access_token(), get_current_user()
# 数据结构:
#   - token claims: {sub: user_id, email, role, iat, exp}

"""
认证模块
Bearer token → User 记录；封禁/待审批账号在这里统一拒绝
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from core.config import settings
from core.database import get_db
from core.models import User

logger = logging.getLogger("security")

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(user: User, expires_days: Optional[int] = None) -> str:
    """为用户签发 HS256 JWT"""
    now = datetime.now(timezone.utc)
    days = expires_days if expires_days is not None else settings.jwt_expire_days
    payload = {
        "sub": user.id,
        "email": user.email,
        "role": user.role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(days=days)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[dict]:
    """校验并解析 token，无效或过期返回 None"""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.InvalidTokenError as e:
        logger.info(f"[auth] token 无效: {e}")
        return None


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """
    FastAPI依赖: 解析 Bearer token 得到当前用户

    - 缺少/格式错误的 Authorization 头 → 401
    - token 无效或用户不存在 → 401
    - 账号被封禁或待审批 → 403
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")

    claims = decode_access_token(credentials.credentials)
    if not claims or not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = db.query(User).filter(User.id == claims["sub"]).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    if user.is_disabled:
        logger.warning(f"[auth] 拒绝已停用账号 {user.email} (status={user.status})")
        raise HTTPException(status_code=403, detail=f"Account is {user.status}")

    return user
