"""
元数据管理器

管理向量存储的文档表（documents.json）和索引元数据（index_metadata.json）
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from retention_engine.utils.exceptions import PersistenceFailureError

from ..schemas import MemoryRecord, RecordMetadata

logger = logging.getLogger(__name__)

DOCUMENTS_FILE = "documents.json"
INDEX_METADATA_FILE = "index_metadata.json"
DOCUMENTS_FORMAT_VERSION = 1


class MetadataManager:
    """
    元数据管理器

    文档表的每一行包含 id、row_id、向量、内容和元数据，
    并冗余存放 source_type / importance / created_at / accessed_at 便于离线查看。
    """

    def __init__(self, persist_dir: str):
        """
        初始化元数据管理器

        Args:
            persist_dir: 持久化目录路径
        """
        self.persist_dir = Path(persist_dir)
        try:
            self.persist_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceFailureError(f"创建持久化目录失败: {e}", path=str(self.persist_dir))

        self.documents_file = self.persist_dir / DOCUMENTS_FILE
        self.index_metadata_file = self.persist_dir / INDEX_METADATA_FILE

        logger.info(f"元数据管理器初始化完成: 目录={persist_dir}")

    @staticmethod
    def to_row(record: MemoryRecord) -> Dict[str, Any]:
        """把记录转换为文档表的一行"""
        meta = record.metadata
        return {
            "id": record.id,
            "row_id": record.row_id,
            "vector": list(record.vector),
            "content": record.content,
            "metadata": meta.model_dump(mode="json"),
            "source_type": meta.source_type.value,
            "importance": meta.importance,
            "created_at": meta.created_at,
            "accessed_at": meta.accessed_at,
        }

    @staticmethod
    def from_row(row: Dict[str, Any]) -> MemoryRecord:
        """把文档表的一行还原为记录"""
        return MemoryRecord(
            id=row["id"],
            row_id=int(row["row_id"]),
            vector=row["vector"],
            content=row["content"],
            metadata=RecordMetadata(**row.get("metadata", {})),
        )

    def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"写入文件失败: {path}, {e}")
            raise PersistenceFailureError(f"写入文件失败: {e}", path=str(path))

    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"读取文件失败: {path}, {e}")
            raise PersistenceFailureError(f"读取文件失败: {e}", path=str(path))

    def save_documents(self, records: Iterable[MemoryRecord], next_row_id: int, saved_at: float) -> int:
        """
        保存文档表

        Args:
            records: 所有记录
            next_row_id: 下一个可用的行号
            saved_at: 保存时间

        Returns:
            int: 保存的记录数
        """
        rows = [self.to_row(record) for record in records]
        self._write_json(self.documents_file, {
            "version": DOCUMENTS_FORMAT_VERSION,
            "next_row_id": next_row_id,
            "saved_at": saved_at,
            "documents": rows,
        })
        logger.debug(f"文档表已保存: {len(rows)} 条记录")
        return len(rows)

    def load_documents(self) -> Tuple[List[MemoryRecord], int]:
        """
        加载文档表

        Returns:
            Tuple[List[MemoryRecord], int]: (记录列表, 下一个可用的行号)

        Raises:
            PersistenceFailureError: 文件损坏
        """
        data = self._read_json(self.documents_file)
        if data is None:
            logger.info("文档表不存在，使用空存储")
            return [], 0

        records = []
        try:
            for row in data.get("documents", []):
                records.append(self.from_row(row))
        except (KeyError, TypeError, PydanticValidationError) as e:
            raise PersistenceFailureError(f"文档表格式错误: {e}", path=str(self.documents_file))

        next_row_id = int(data.get("next_row_id", 0))
        if records:
            next_row_id = max(next_row_id, max(record.row_id for record in records) + 1)

        logger.info(f"文档表已加载: {len(records)} 条记录")
        return records, next_row_id

    def save_index_metadata(self, data: Dict[str, Any]) -> None:
        """保存索引元数据（索引定义、查询模式等）"""
        self._write_json(self.index_metadata_file, data)

    def load_index_metadata(self) -> Optional[Dict[str, Any]]:
        """加载索引元数据，不存在时返回None"""
        return self._read_json(self.index_metadata_file)

    def clear(self) -> None:
        """删除文档表和索引元数据文件"""
        for path in (self.documents_file, self.index_metadata_file):
            try:
                if path.exists():
                    path.unlink()
            except OSError as e:
                raise PersistenceFailureError(f"删除文件失败: {e}", path=str(path))
        logger.info("持久化元数据已清空")

    def storage_size_bytes(self) -> int:
        """持久化目录下所有文件的总大小"""
        return sum(path.stat().st_size for path in self.persist_dir.iterdir() if path.is_file())
