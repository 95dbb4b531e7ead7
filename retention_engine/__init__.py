"""
记忆保留引擎

个人助理的长期记忆层：向量化存储记忆片段，并通过重要性评分、语义去重、
策略化遗忘（含合规删除）和后台整合，让存储保持有界、去重、合规且按保留价值排序。

主要入口：
- MemoryService: 对外服务层
- EngineSettings: 引擎配置
- Config: 配置管理器
"""

from retention_engine.schemas.config import EngineSettings
from retention_engine.services.memory_service import MemoryService, build_embedding
from retention_engine.utils.config import Config

__version__ = "0.1.0"

__all__ = [
    "Config",
    "EngineSettings",
    "MemoryService",
    "build_embedding",
    "__version__",
]
