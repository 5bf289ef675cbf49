"""
PulseBoard 路由模块包 (PulseBoard Router Module Package)

- status_page.py: 心跳写入、固定窗口可用率、定长时间线、状态页轮询数据与整体状态

所有路由模块在 main.py 中通过 app.include_router() 统一注册，使用 /api/v1/ 前缀。
"""
