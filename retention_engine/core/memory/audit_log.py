"""
删除请求审计日志

每次删除请求状态变化追加一行 JSON（NDJSON），只追加不修改。
"""

import asyncio
import json
import os
from typing import List, Optional

from retention_engine.utils.exceptions import PersistenceFailureError
from retention_engine.utils.helpers import Clock, system_clock, to_iso
from retention_engine.utils.logger import get_logger

from .schemas import AuditEntry, DeletionRequest

logger = get_logger(__name__)


class AuditLog:
    """
    追加式审计日志

    Args:
        path: 日志文件路径
        enabled: 是否启用，关闭时所有写入都是空操作
        clock: 时钟函数
    """

    def __init__(self, path: str, enabled: bool = True, clock: Clock = system_clock):
        self.path = path
        self.enabled = enabled
        self._clock = clock
        self._lock = asyncio.Lock()

    def _append_line(self, line: str) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def record(self, action: str, request: DeletionRequest) -> Optional[AuditEntry]:
        """
        记录一次状态变化

        Args:
            action: 动作（request_submitted / processing_started / completed / failed）
            request: 删除请求

        Returns:
            Optional[AuditEntry]: 写入的条目，未启用时返回None

        Raises:
            PersistenceFailureError: 写入失败
        """
        if not self.enabled:
            return None

        entry = AuditEntry(
            timestamp=to_iso(self._clock()),
            action=action,
            request_id=request.request_id,
            type=request.scope.value,
            status=request.status.value,
            deleted_count=request.deleted_count if request.is_final else None,
            certificate_hash=request.certificate_hash,
        )
        line = json.dumps(entry.model_dump(), ensure_ascii=False, sort_keys=True)

        async with self._lock:
            try:
                self._append_line(line)
            except OSError as e:
                logger.error("写入审计日志失败", path=self.path, error=str(e))
                raise PersistenceFailureError(f"写入审计日志失败: {e}", path=self.path)
        return entry

    async def export(self) -> str:
        """返回审计日志全文，未启用或文件不存在时返回空字符串"""
        if not self.enabled or not os.path.exists(self.path):
            return ""
        async with self._lock:
            with open(self.path, "r", encoding="utf-8") as f:
                return f.read()

    async def entries(self) -> List[AuditEntry]:
        text = await self.export()
        return [AuditEntry(**json.loads(line)) for line in text.splitlines() if line.strip()]
