# backend/core/models/playground.py
# 功能: Playground（评估池）模型 + 显式授权用户 + 问题
# 主要类: Playground, PlaygroundAuthorizedUser, Question
# 数据结构:
#   - type: ab_testing / tuning / data_labeling / curation
#   - access_control_type: open / email_restricted / explicit_authorization
#   - data labeling 专用: repetitions_per_task, auto_calculate_evaluations, has_returned_tasks

"""
Playground 模型
一个 Playground = 一次评估活动；data_labeling 类型下挂多个 ParentTask（每个上传文件一个）
"""

from typing import Optional, List, TYPE_CHECKING

from sqlalchemy import String, Text, Integer, JSON, ForeignKey, Boolean, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.models.base import BaseModel

if TYPE_CHECKING:
    from core.models.parent_task import ParentTask


PLAYGROUND_TYPES = {
    "ab_testing": "A/B 测试",
    "tuning": "调优",
    "data_labeling": "数据标注",
    "curation": "通话筛选",
}

ACCESS_CONTROL_TYPES = {
    "open": "所有测试员可见",
    "email_restricted": "仅限指定邮箱",
    "explicit_authorization": "仅限显式授权用户",
}

QUESTION_TYPES = {
    "select": "单选",
    "input_string": "文本输入",
    "boolean": "是/否",
}


class Playground(BaseModel):
    """评估池"""

    __tablename__ = "playgrounds"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(32), default="data_labeling", nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    support_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # 访问控制
    access_control_type: Mapped[str] = mapped_column(String(32), default="open")
    restricted_emails: Mapped[list] = mapped_column(JSON, default=list)

    # 目标评估总数（auto_calculate_evaluations 时 = 任务数 × 每任务重复次数）
    evaluation_goal: Mapped[int] = mapped_column(Integer, default=0)

    # Data labeling
    repetitions_per_task: Mapped[Optional[int]] = mapped_column(Integer, default=1, nullable=True)
    auto_calculate_evaluations: Mapped[bool] = mapped_column(Boolean, default=False)
    has_returned_tasks: Mapped[bool] = mapped_column(Boolean, default=False)

    questions: Mapped[List["Question"]] = relationship(
        "Question",
        back_populates="playground",
        cascade="all, delete-orphan",
        order_by="Question.order_index",
    )
    parent_tasks: Mapped[List["ParentTask"]] = relationship(
        "ParentTask",
        back_populates="playground",
    )

    @property
    def effective_repetitions(self) -> int:
        return self.repetitions_per_task or 1


class PlaygroundAuthorizedUser(BaseModel):
    """显式授权（explicit_authorization 池与 client 角色使用）"""

    __tablename__ = "playground_authorized_users"
    __table_args__ = (
        UniqueConstraint("playground_id", "user_id", name="uq_playground_authorized_user"),
    )

    playground_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("playgrounds.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )
    authorized_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class Question(BaseModel):
    """Playground 下的评估问题"""

    __tablename__ = "questions"

    playground_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("playgrounds.id"), nullable=False, index=True
    )
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    question_type: Mapped[str] = mapped_column(String(20), default="select")
    options: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)  # [{label, value}]
    order_index: Mapped[int] = mapped_column(Integer, default=0)
    required: Mapped[bool] = mapped_column(Boolean, default=True)

    playground: Mapped["Playground"] = relationship("Playground", back_populates="questions")
