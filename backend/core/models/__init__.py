# backend/core/models/__init__.py
# 功能: 模型包入口，导出所有SQLAlchemy模型
# 包含: 所有数据模型类

"""
数据模型包
导出所有SQLAlchemy模型供其他模块使用
"""

from core.models.base import BaseModel, generate_uuid, utcnow
from core.models.user import User, LoginCode, USER_ROLES, USER_STATUS, DISABLED_STATUSES
from core.models.playground import (
    Playground,
    PlaygroundAuthorizedUser,
    Question,
    PLAYGROUND_TYPES,
    ACCESS_CONTROL_TYPES,
    QUESTION_TYPES,
)
from core.models.parent_task import (
    ParentTask,
    ParentTaskEvaluation,
    ParentTaskAssignment,
    PARENT_TASK_STATUS,
    ASSIGNABLE_STATUSES,
    FILE_TYPES,
    ASSIGNMENT_STATUS,
)
from core.models.evaluation import Evaluation
from core.models.consolidated_answer import ConsolidatedAnswer

__all__ = [
    # 基础
    "BaseModel",
    "generate_uuid",
    "utcnow",

    # 用户
    "User",
    "LoginCode",
    "USER_ROLES",
    "USER_STATUS",
    "DISABLED_STATUSES",

    # 评估池
    "Playground",
    "PlaygroundAuthorizedUser",
    "Question",
    "PLAYGROUND_TYPES",
    "ACCESS_CONTROL_TYPES",
    "QUESTION_TYPES",

    # 数据标注任务
    "ParentTask",
    "ParentTaskEvaluation",
    "ParentTaskAssignment",
    "PARENT_TASK_STATUS",
    "ASSIGNABLE_STATUSES",
    "FILE_TYPES",
    "ASSIGNMENT_STATUS",

    # 评估答案 / 合并答案
    "Evaluation",
    "ConsolidatedAnswer",
]
