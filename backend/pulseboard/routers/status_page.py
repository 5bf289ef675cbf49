"""
状态页与可用率路由

提供心跳写入、固定窗口可用率、定长时间线、状态页轮询数据和整体状态接口。
存储故障由全局异常处理器转换为 503 "暂时不可用"。
"""
from typing import List

from fastapi import APIRouter, Depends, Query

from pulseboard.core.deps import get_event_log, get_registry
from pulseboard.schemas.heartbeat import (
    HeartbeatAccepted, HeartbeatCreate, StatusPageHeartbeatResponse,
    StatusSummaryResponse, TimelinePoint, UptimeResponse,
)
from pulseboard.services.buckets import Resolution, isoformat
from pulseboard.services.calculator import FIXED_WINDOWS, CalculatorRegistry
from pulseboard.services.status_page import overall_status, status_page_heartbeats
from pulseboard.services.stores import HeartbeatRecord, RawEventLog

router = APIRouter(prefix="/api/v1", tags=["status-page"])


@router.post("/monitors/{monitor_id}/heartbeats", response_model=HeartbeatAccepted, status_code=201)
async def ingest_heartbeat(
    monitor_id: int,
    body: HeartbeatCreate,
    registry: CalculatorRegistry = Depends(get_registry),
):
    """写入一次心跳（调度器调用）。迟到心跳返回 409，但已记录在原始日志中。"""
    record = HeartbeatRecord(
        monitor_id=monitor_id, time=body.time, status=body.status,
        ping=body.ping, msg=body.msg,
    )
    bucket = await registry.ingest(monitor_id, record)
    return HeartbeatAccepted(
        monitor_id=monitor_id,
        bucket_start=isoformat(bucket.start),
        up=bucket.up, down=bucket.down, maintenance=bucket.maintenance,
        avg_ping=bucket.avg_ping,
    )


@router.get("/monitors/{monitor_id}/uptime", response_model=UptimeResponse)
async def get_uptime(
    monitor_id: int,
    duration: str = Query("24h", pattern="^(" + "|".join(FIXED_WINDOWS) + ")$"),
    registry: CalculatorRegistry = Depends(get_registry),
):
    """固定窗口（24h / 7d / 30d / 1y）可用率。"""
    calculator = await registry.get(monitor_id)
    uptime = await calculator.fixed_window_uptime(duration)
    return UptimeResponse(monitor_id=monitor_id, duration=duration, uptime=uptime)


@router.get("/monitors/{monitor_id}/data-array", response_model=List[TimelinePoint])
async def get_data_array(
    monitor_id: int,
    count: int = Query(60, ge=1, le=1440),
    resolution: Resolution = Query(Resolution.MINUTE),
    registry: CalculatorRegistry = Depends(get_registry),
):
    """以当前时间结尾的 count 个桶，缺失处为 UNKNOWN。"""
    calculator = await registry.get(monitor_id)
    return await calculator.data_array(count, resolution)


@router.get("/status-page/heartbeat", response_model=StatusPageHeartbeatResponse)
async def get_status_page_heartbeats(
    monitor_ids: List[int] = Query(..., description="状态页上公开的监控项 ID"),
    range_days: float = Query(0, ge=0, le=3650, description="心跳条显示的天数，0 表示最近 100 条心跳"),
    registry: CalculatorRegistry = Depends(get_registry),
):
    """状态页轮询数据：自适应时间线、可用率和聚合粒度说明。"""
    return await status_page_heartbeats(registry, monitor_ids, range_days)


@router.get("/status-page/summary", response_model=StatusSummaryResponse)
async def get_status_summary(
    monitor_ids: List[int] = Query(...),
    event_log: RawEventLog = Depends(get_event_log),
):
    """状态页整体状态，基于每个监控项的最新心跳。"""
    status = await overall_status(event_log, monitor_ids)
    return StatusSummaryResponse(status=status, monitor_ids=monitor_ids)
