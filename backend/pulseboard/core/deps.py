"""
FastAPI 依赖项模块 (FastAPI Dependencies Module)

从应用状态中取出启动时构建的计算器注册表和原始事件日志，注入到路由函数。

Pulls the calculator registry and raw event log built at startup out of the
application state and injects them into route handlers.
"""
from fastapi import Request

from pulseboard.services.calculator import CalculatorRegistry
from pulseboard.services.stores import RawEventLog


def get_registry(request: Request) -> CalculatorRegistry:
    """当前进程唯一的计算器注册表 (The process-wide calculator registry)"""
    return request.app.state.registry


def get_event_log(request: Request) -> RawEventLog:
    """原始心跳事件日志 (Raw heartbeat event log)"""
    return request.app.state.event_log
