# backend/api/auth.py
# 功能: 登录 - 邮箱一次性验证码换取 JWT
# 主要端点:
#   POST /auth/signup  - 校验邮箱域名，必要时创建用户，生成 6 位验证码
#   POST /auth/verify  - 校验验证码，返回 {token, user}
#   GET  /auth/me      - 当前用户
#   POST /auth/logout  - 无状态，仅确认

"""
认证 API
"""

import logging
import secrets
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel as PydanticBase
from sqlalchemy.orm import Session

from core.config import settings
from core.database import get_db
from core.models import LoginCode, User, utcnow
from core.security import create_access_token, get_current_user

logger = logging.getLogger("auth")

router = APIRouter(prefix="/auth", tags=["auth"])


class SignupRequest(PydanticBase):
    email: str


class VerifyRequest(PydanticBase):
    email: str
    code: str


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _user_summary(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "role": user.role,
        "full_name": user.full_name,
        "status": user.status,
    }


def generate_login_code() -> str:
    """6 位数字验证码"""
    return f"{secrets.randbelow(10 ** 6):06d}"


@router.post("/signup")
def signup(data: SignupRequest, db: Session = Depends(get_db)):
    email = _normalize_email(data.email)
    domain = settings.allowed_email_domain.lower()
    if "@" not in email or email.rsplit("@", 1)[1] != domain:
        raise HTTPException(status_code=400, detail=f"Email must be from domain {domain}")

    user = db.query(User).filter(User.email == email).first()
    if not user:
        user = User(email=email, role="tester", status="active")
        db.add(user)
        logger.info(f"[auth] 新用户 {email}")

    # 同一邮箱只保留最新的验证码
    db.query(LoginCode).filter(
        LoginCode.email == email, LoginCode.used == False  # noqa: E712
    ).update({"used": True}, synchronize_session=False)

    code = generate_login_code()
    db.add(LoginCode(
        email=email,
        code=code,
        expires_at=utcnow() + timedelta(minutes=settings.otp_expire_minutes),
        used=False,
    ))
    db.commit()

    logger.info(f"[auth] 验证码已生成 {email}")
    if settings.debug:
        logger.debug(f"[auth] OTP for {email}: {code}")

    response = {"message": "OTP sent to email", "email": email}
    if settings.debug:
        response["otp"] = code
    return response


@router.post("/verify")
def verify(data: VerifyRequest, db: Session = Depends(get_db)):
    email = _normalize_email(data.email)
    login_code = db.query(LoginCode).filter(
        LoginCode.email == email,
        LoginCode.code == data.code.strip(),
        LoginCode.used == False,  # noqa: E712
    ).order_by(LoginCode.created_at.desc()).first()

    if not login_code or login_code.expires_at < utcnow():
        raise HTTPException(status_code=401, detail="Invalid or expired OTP")

    user = db.query(User).filter(User.email == email).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if user.is_disabled:
        raise HTTPException(status_code=403, detail=f"Account is {user.status}")

    login_code.used = True
    user.last_login = utcnow()
    if user.status == "pending_invite":
        user.status = "active"
    db.commit()

    return {"token": create_access_token(user), "user": _user_summary(user)}


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return _user_summary(user)


@router.post("/logout")
def logout():
    return {"message": "Logged out successfully"}
