"""
状态页聚合服务 (Status Page Aggregation Service)

把多个监控项的自适应时间线、可用率和聚合元数据组装成状态页轮询接口的响应，
并根据每个监控项的最新心跳给出状态页整体状态（供徽章渲染方使用）。
"""
from typing import Dict, Iterable

from pulseboard.services.buckets import HeartbeatStatus
from pulseboard.services.calculator import CalculatorRegistry
from pulseboard.services.stores import RawEventLog

OVERALL_UP = "up"
OVERALL_DOWN = "down"
OVERALL_DEGRADED = "degraded"
OVERALL_MAINTENANCE = "maintenance"
OVERALL_NA = "N/A"


async def status_page_heartbeats(registry: CalculatorRegistry, monitor_ids: Iterable[int],
                                 range_days: float) -> Dict[str, dict]:
    """
    状态页心跳轮询数据。

    Returns:
        {"heartbeatList": {id: [点]}, "uptimeList": {"<id>_24": 可用率},
         "aggregationInfo": {id: {"type", "period"}}}
    """
    heartbeat_list: Dict[str, list] = {}
    uptime_list: Dict[str, float] = {}
    aggregation_info: Dict[str, dict] = {}

    for monitor_id in monitor_ids:
        result = await registry.reconcile(monitor_id, range_days)
        heartbeat_list[str(monitor_id)] = result.points
        uptime_list[f"{monitor_id}_24"] = result.uptime
        aggregation_info[str(monitor_id)] = result.aggregation

    return {
        "heartbeatList": heartbeat_list,
        "uptimeList": uptime_list,
        "aggregationInfo": aggregation_info,
    }


async def overall_status(event_log: RawEventLog, monitor_ids: Iterable[int]) -> str:
    """
    根据每个监控项的最新心跳计算整体状态：
    任一维护 → maintenance；只有 UP → up；UP 与 DOWN 并存 → degraded；
    只有 DOWN → down；没有心跳 → N/A。PENDING 忽略。
    """
    has_up = has_down = has_maintenance = False
    for monitor_id in monitor_ids:
        beat = await event_log.latest(monitor_id)
        if beat is None:
            continue
        if beat.status == HeartbeatStatus.MAINTENANCE:
            has_maintenance = True
        elif beat.status == HeartbeatStatus.PENDING:
            pass
        elif beat.status == HeartbeatStatus.UP:
            has_up = True
        else:
            has_down = True

    if not (has_up or has_down or has_maintenance):
        return OVERALL_NA
    if has_maintenance:
        return OVERALL_MAINTENANCE
    if has_up and not has_down:
        return OVERALL_UP
    if has_up and has_down:
        return OVERALL_DEGRADED
    return OVERALL_DOWN
