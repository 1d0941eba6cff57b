# backend/core/errors.py
# 功能: 业务层异常（服务函数抛出，路由层映射为 HTTP 状态码）
# 主要类: WorkflowValidationError(400), NotFoundError(404), StorageError(500)

"""
业务异常
服务层不构造 HTTP 响应，只抛这些异常；api 层统一 raise HTTPException
"""


class WorkflowValidationError(ValueError):
    """请求参数不合法或状态不允许该操作 → 400"""


class NotFoundError(LookupError):
    """实体不存在 → 404"""


class StorageError(RuntimeError):
    """Blob 存储写入失败"""
