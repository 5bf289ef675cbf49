"""
聚合桶模型 (Aggregate Bucket Model)

按 (监控项, 分辨率, 桶起始时间) 唯一存储已关闭的分钟/小时/天聚合行。
桶起始时间为按分辨率对齐到 UTC 纪元边界的 Unix 秒。
"""
from sqlalchemy import String, Integer, Float, BigInteger, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from pulseboard.core.database import Base


class UptimeStat(Base):
    """聚合桶表，一行对应一个已关闭（已定稿）的桶。"""
    __tablename__ = "uptime_stats"
    __table_args__ = (
        UniqueConstraint("monitor_id", "resolution", "timestamp", name="uq_uptime_stats_bucket"),
        Index("ix_uptime_stats_resolution_timestamp", "resolution", "timestamp"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    monitor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    resolution: Mapped[str] = mapped_column(String(10), nullable=False)  # minute / hour / day
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)  # 桶起始 Unix 秒
    up: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    down: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    maintenance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_ping: Mapped[float | None] = mapped_column(Float, nullable=True)
    weight: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # 参与平均延迟的样本数
