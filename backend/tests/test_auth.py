# backend/tests/test_auth.py
# 功能: 邮箱验证码登录 + Bearer token 访问控制测试
# 主要函数: test_signup_and_verify_flow, test_disabled_user_is_rejected, test_ensure_admin_creates_and_promotes
# 数据结构: 内存 SQLite 中的 User / LoginCode

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import settings
from core.database import Base, get_db
from core.models import LoginCode, User, utcnow
from core.security import create_access_token, decode_access_token
from main import app


@pytest.fixture
def client_and_session(monkeypatch):
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    monkeypatch.setattr(settings, "debug", True)
    app.dependency_overrides[get_db] = override_get_db
    session = SessionLocal()
    try:
        yield TestClient(app), session
    finally:
        session.close()
        app.dependency_overrides.clear()


def test_signup_rejects_foreign_domain(client_and_session):
    client, session = client_and_session
    resp = client.post("/auth/signup", json={"email": "someone@gmail.com"})
    assert resp.status_code == 400
    assert session.query(User).count() == 0


def test_signup_and_verify_flow(client_and_session):
    client, session = client_and_session

    resp = client.post("/auth/signup", json={"email": "Ana@Marisa.care"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["email"] == "ana@marisa.care"
    code = body["otp"]
    assert len(code) == 6 and code.isdigit()

    user = session.query(User).filter(User.email == "ana@marisa.care").one()
    assert user.role == "tester"

    resp = client.post("/auth/verify", json={"email": "ana@marisa.care", "code": code})
    assert resp.status_code == 200
    token = resp.json()["token"]
    claims = decode_access_token(token)
    assert claims["sub"] == user.id
    assert claims["role"] == "tester"
    assert claims["email"] == "ana@marisa.care"

    resp = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    assert resp.json()["email"] == "ana@marisa.care"

    # 验证码只能用一次
    resp = client.post("/auth/verify", json={"email": "ana@marisa.care", "code": code})
    assert resp.status_code == 401


def test_verify_rejects_expired_code(client_and_session):
    client, session = client_and_session
    session.add(User(email="bia@marisa.care", role="tester"))
    session.add(LoginCode(email="bia@marisa.care", code="123456",
                          expires_at=utcnow() - timedelta(minutes=1), used=False))
    session.commit()

    resp = client.post("/auth/verify", json={"email": "bia@marisa.care", "code": "123456"})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid or expired OTP"


def test_missing_or_invalid_token(client_and_session):
    client, _ = client_and_session
    resp = client.get("/auth/me")
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Missing or invalid authorization header"

    resp = client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid or expired token"


def test_expired_token(client_and_session):
    client, session = client_and_session
    user = User(email="c@marisa.care", role="tester", status="active")
    session.add(user)
    session.commit()

    token = create_access_token(user, expires_days=-1)
    resp = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


@pytest.mark.parametrize("status", ["blocked", "pending_approval"])
def test_disabled_user_is_rejected(client_and_session, status):
    client, session = client_and_session
    user = User(email="d@marisa.care", role="admin", status=status)
    session.add(user)
    session.commit()
    headers = {"Authorization": f"Bearer {create_access_token(user)}"}

    resp = client.get("/auth/me", headers=headers)
    assert resp.status_code == 403
    assert resp.json()["detail"] == f"Account is {status}"

    resp = client.get("/admin/playgrounds", headers=headers)
    assert resp.status_code == 403


def test_logout(client_and_session):
    client, _ = client_and_session
    assert client.post("/auth/logout").json() == {"message": "Logged out successfully"}


def test_ensure_admin_creates_and_promotes(client_and_session):
    from scripts.init_db import ensure_admin

    _, session = client_and_session
    session.add(User(email="chefe@marisa.care", role="tester", status="blocked", blocked_reason="x"))
    session.commit()

    promoted = ensure_admin(session, "Chefe@marisa.care")
    assert promoted.role == "admin"
    assert promoted.status == "active"
    assert promoted.blocked_reason is None

    created = ensure_admin(session, "nova@marisa.care")
    assert created.role == "admin"
    assert session.query(User).filter(User.role == "admin").count() == 2

    with pytest.raises(ValueError):
        ensure_admin(session, "outsider@gmail.com")
