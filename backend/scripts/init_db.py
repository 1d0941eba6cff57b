# backend/scripts/init_db.py
# 功能: 初始化数据库，创建表，并创建/提升第一个管理员账号
# 主要函数: init_database(), ensure_admin()
# 注意: /auth/signup 只会创建 tester，第一个 admin 必须由此脚本创建

"""
数据库初始化脚本
运行: python -m scripts.init_db admin@marisa.care
"""

import sys
from pathlib import Path

# 确保可以导入core模块
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.config import settings
from core.database import Base, get_engine, get_session_maker
from core.models import User


def init_database():
    """创建所有数据库表"""
    print("正在创建数据库表...")
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    print("数据库表创建完成！")


def ensure_admin(db, email: str) -> User:
    """创建管理员；邮箱已存在则提升为 admin 并恢复为 active"""
    email = email.strip().lower()
    domain = settings.allowed_email_domain.lower()
    if not email.endswith("@" + domain):
        raise ValueError(f"Email must be from domain {domain}")

    user = db.query(User).filter(User.email == email).first()
    if user:
        user.role = "admin"
        user.status = "active"
        user.blocked_at = None
        user.blocked_by = None
        user.blocked_reason = None
        print(f"  - {email} 已提升为管理员")
    else:
        user = User(email=email, role="admin", status="active")
        db.add(user)
        print(f"  - 创建管理员 {email}")
    db.commit()
    return user


def main():
    """主函数"""
    print("=" * 50)
    print("AI Marisa Playground - 数据库初始化")
    print("=" * 50)

    init_database()

    if len(sys.argv) > 1:
        SessionLocal = get_session_maker()
        db = SessionLocal()
        try:
            ensure_admin(db, sys.argv[1])
        except Exception as e:
            db.rollback()
            print(f"错误: {e}")
            raise
        finally:
            db.close()

    print("=" * 50)
    print("初始化完成！")
    print("=" * 50)


if __name__ == "__main__":
    main()
