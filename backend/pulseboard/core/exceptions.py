"""
全局异常处理模块 (Global Exception Handling Module)

定义业务异常类和 FastAPI 全局异常处理器，提供统一的错误响应格式。
存储层故障统一转换为 503 "暂时不可用" 响应，绝不返回部分或错误的聚合结果。

Defines business exception classes and FastAPI global exception handlers,
providing a unified error response format. Storage failures are translated into a
503 "temporarily unavailable" response instead of a partial or incorrect aggregate.
"""
import logging
import traceback
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ============================================================
# 业务异常类 (Business Exception Classes)
# ============================================================

class BusinessError(Exception):
    """业务异常基类 (Base Business Exception)"""
    status_code: int = 400
    error: str = "business_error"

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class ValidationError(BusinessError):
    """数据校验失败 (Validation Error)"""
    status_code = 422
    error = "validation_error"


class InvalidHeartbeat(ValidationError):
    """心跳格式错误：时间戳缺失、状态码非法或延迟为负 (Malformed heartbeat)"""
    error = "invalid_heartbeat"


class LateHeartbeat(InvalidHeartbeat):
    """
    迟到心跳 (Late Heartbeat)

    所属分钟桶已关闭。心跳已写入原始事件日志并标记为 late，但不计入已关闭的聚合。

    Its minute bucket is already closed. The heartbeat has been written to the raw
    event log flagged as late, and is excluded from closed aggregates.
    """
    status_code = 409
    error = "late_heartbeat"


class StorageFailure(BusinessError):
    """存储不可用 (Storage Unreachable)"""
    status_code = 503
    error = "temporarily_unavailable"


class TierUnavailable(Exception):
    """某一层对账数据源读取失败，由对账器降级到下一层处理 (One reconciliation tier failed)"""

    def __init__(self, tier: str, cause: Optional[BaseException] = None):
        self.tier = tier
        self.cause = cause
        super().__init__(f"tier {tier} unavailable: {cause}")


# ============================================================
# 全局异常处理器注册 (Global Exception Handler Registration)
# ============================================================

def register_exception_handlers(app: FastAPI) -> None:
    """
    注册全局异常处理器到 FastAPI 应用 (Register global exception handlers to FastAPI app)

    处理优先级：
    1. BusinessError 子类 → 对应 HTTP 状态码 + 结构化响应
    2. HTTPException → 保持原样，包装为统一格式
    3. Exception → 500 + 完整 traceback 日志
    """

    @app.exception_handler(BusinessError)
    async def business_error_handler(request: Request, exc: BusinessError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error,
                "message": exc.message,
                "detail": exc.detail,
                "status_code": exc.status_code,
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "http_error",
                "message": str(exc.detail),
                "detail": None,
                "status_code": exc.status_code,
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        # 记录完整 traceback 用于调试 (Log full traceback for debugging)
        logger.error(
            "Unhandled exception on %s %s: %s\n%s",
            request.method,
            request.url.path,
            str(exc),
            traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "服务器内部错误，请稍后重试 (Internal server error, please try again later)",
                "detail": None,
                "status_code": 500,
            },
        )
