"""
核心模块包 (Core Module Package)

PulseBoard 的核心基础模块，包含配置管理、数据库连接和统一异常处理。

Core foundational modules for PulseBoard, including configuration management,
database connections and unified exception handling.
"""
