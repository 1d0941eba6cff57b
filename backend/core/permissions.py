# backend/core/permissions.py
# 功能: 角色 → 操作 的声明式授权表（全系统唯一的角色判断处）
# 主要函数: has_permission(), require_permission()
# 数据结构:
#   - OPERATIONS: {operation: 说明}
#   - ROLE_PERMISSIONS: {role: frozenset(operation)}

"""
授权策略表
路由通过 Depends(require_permission("task.consolidate")) 声明自己执行的操作，
不在路由里散落 role != "admin" 判断
"""

import logging

from fastapi import Depends, HTTPException

from core.models import User
from core.security import get_current_user

logger = logging.getLogger("permissions")


OPERATIONS = {
    "pool.ingest": "上传 ZIP 批量创建任务",
    "pool.manage": "创建/修改/停用评估池与授权",
    "pool.evaluate": "领取任务并提交评估",
    "pool.metrics": "查看评估池整体进度",
    "task.list": "列出评估池全部任务",
    "task.review": "查看任务评估详情与单任务进度",
    "task.consolidate": "合并/排除/退回/撤销合并",
    "task.export": "导出合并数据集",
    "user.manage": "管理用户角色与封禁",
}

_EVALUATOR = frozenset({"pool.evaluate", "pool.metrics"})

ROLE_PERMISSIONS = {
    "admin": frozenset(OPERATIONS),
    "manager": _EVALUATOR | {"task.list"},
    "tester": _EVALUATOR,
    "qa": _EVALUATOR,
    "client": _EVALUATOR,
}

# 各操作被拒绝时的提示
DENIED_MESSAGES = {
    "pool.ingest": "Only admins can upload files",
    "task.export": "Only admins can export datasets",
}


def has_permission(role: str, operation: str) -> bool:
    """角色是否允许执行该操作（未知角色/操作一律拒绝）"""
    if operation not in OPERATIONS:
        raise KeyError(f"Unknown operation: {operation}")
    return operation in ROLE_PERMISSIONS.get(role, frozenset())


def require_permission(operation: str):
    """
    生成 FastAPI 依赖：校验当前用户有权执行 operation，返回当前用户

    在模块加载时即校验 operation 名称，拼写错误会在启动时暴露
    """
    if operation not in OPERATIONS:
        raise KeyError(f"Unknown operation: {operation}")

    def _dependency(user: User = Depends(get_current_user)) -> User:
        if not has_permission(user.role, operation):
            logger.info(f"[authz] {user.email} ({user.role}) 无权执行 {operation}")
            raise HTTPException(
                status_code=403,
                detail=DENIED_MESSAGES.get(operation, "Admin access required"),
            )
        return user

    return _dependency
