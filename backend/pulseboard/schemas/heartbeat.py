"""
心跳与可用率相关请求/响应模型

定义心跳写入、时间线点、固定窗口可用率和状态页轮询接口的数据结构。
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class HeartbeatCreate(BaseModel):
    """调度器上报一次检查结果的请求体。"""
    time: datetime
    status: int = Field(ge=0, le=3)  # 0=DOWN 1=UP 2=PENDING 3=MAINTENANCE
    ping: Optional[float] = Field(default=None, ge=0)
    msg: Optional[str] = Field(default=None, max_length=500)


class HeartbeatAccepted(BaseModel):
    """心跳写入结果，附带被更新的分钟桶。"""
    monitor_id: int
    bucket_start: str
    up: int
    down: int
    maintenance: int
    avg_ping: Optional[float] = None


class TimelinePoint(BaseModel):
    """时间线上的一个点：聚合桶、单条心跳或 UNKNOWN 占位。"""
    status: int  # 0=DOWN 1=UP 2=PENDING 3=MAINTENANCE 4=UNKNOWN
    time: str
    ping: Optional[float] = None
    msg: Optional[str] = None
    date: Optional[str] = None
    uptime: Optional[float] = None


class UptimeResponse(BaseModel):
    """固定窗口可用率。"""
    monitor_id: int
    duration: str
    uptime: float


class AggregationInfo(BaseModel):
    type: str
    period: str


class StatusPageHeartbeatResponse(BaseModel):
    """状态页轮询响应。"""
    heartbeatList: Dict[str, List[TimelinePoint]]
    uptimeList: Dict[str, float]
    aggregationInfo: Dict[str, AggregationInfo]


class StatusSummaryResponse(BaseModel):
    """状态页整体状态：up / down / degraded / maintenance / N/A。"""
    status: str
    monitor_ids: List[int]
