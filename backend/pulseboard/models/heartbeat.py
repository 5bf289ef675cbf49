"""
心跳模型 (Heartbeat Model)

原始事件日志表：每次健康检查写入一行，写入后不可变。
既是最近未聚合时段的数据来源，也用于分钟级高保真展示。

Raw event log table: one immutable row per health check. Source of truth for the
most recent not-yet-rolled-up period and for high-fidelity minute rendering.
"""
from datetime import datetime

from sqlalchemy import String, Integer, Float, DateTime, Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column

from pulseboard.core.database import Base


class Heartbeat(Base):
    """心跳记录表 (Heartbeat Record Table)"""
    __tablename__ = "heartbeats"
    __table_args__ = (
        Index("ix_heartbeats_monitor_time", "monitor_id", "time"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)  # 主键 ID (Primary Key ID)
    monitor_id: Mapped[int] = mapped_column(Integer, nullable=False)  # 监控项 ID (Monitor ID)
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)  # 检查时间 UTC (Check Time, UTC)
    status: Mapped[int] = mapped_column(Integer, nullable=False)  # 0=DOWN 1=UP 2=PENDING 3=MAINTENANCE
    ping: Mapped[float | None] = mapped_column(Float, nullable=True)  # 响应延迟毫秒 (Latency in ms)
    msg: Mapped[str | None] = mapped_column(String(500), nullable=True)  # 检查消息 (Check Message)
    late: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)  # 所属分钟桶关闭后才到达 (Arrived after its bucket closed)
