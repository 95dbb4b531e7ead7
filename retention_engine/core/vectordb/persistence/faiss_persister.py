"""
FAISS索引持久化管理

实现FAISS索引的保存和加载功能
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import faiss
except ImportError:
    faiss = None

from retention_engine.utils.exceptions import PersistenceFailureError

logger = logging.getLogger(__name__)

DEFAULT_INDEX_NAME = "vectors"


class FAISSPersister:
    """
    FAISS索引持久化管理

    负责FAISS索引文件（{name}.faiss）的保存、加载和删除。
    写入先落到临时文件再原子替换，避免留下半截文件。
    """

    def __init__(self, persist_dir: str):
        """
        初始化FAISS持久化管理器

        Args:
            persist_dir: 持久化目录路径
        """
        if faiss is None:
            raise ImportError(
                "faiss-cpu库未安装。请运行: pip install faiss-cpu"
            )

        self.persist_dir = Path(persist_dir)
        try:
            self.persist_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceFailureError(f"创建持久化目录失败: {e}", path=str(self.persist_dir))

        logger.info(f"FAISS持久化管理器初始化完成: 目录={persist_dir}")

    def index_path(self, index_name: str = DEFAULT_INDEX_NAME) -> Path:
        return self.persist_dir / f"{index_name}.faiss"

    def exists(self, index_name: str = DEFAULT_INDEX_NAME) -> bool:
        return self.index_path(index_name).exists()

    async def save_index(self, index: "faiss.Index", index_name: str = DEFAULT_INDEX_NAME) -> Path:
        """
        保存FAISS索引

        Args:
            index: FAISS索引对象
            index_name: 索引名称

        Returns:
            Path: 索引文件路径

        Raises:
            PersistenceFailureError: 写入失败
        """
        index_path = self.index_path(index_name)
        tmp_path = index_path.with_suffix(".faiss.tmp")
        try:
            faiss.write_index(index, str(tmp_path))
            os.replace(tmp_path, index_path)
        except (OSError, RuntimeError) as e:
            logger.error(f"保存FAISS索引失败: {e}")
            raise PersistenceFailureError(f"保存FAISS索引失败: {e}", path=str(index_path))

        logger.debug(f"FAISS索引已保存: {index_path}, 向量数={index.ntotal}")
        return index_path

    async def load_index(self, index_name: str = DEFAULT_INDEX_NAME) -> Optional["faiss.Index"]:
        """
        加载FAISS索引

        Args:
            index_name: 索引名称

        Returns:
            Optional[faiss.Index]: 加载的索引对象，如果不存在则返回None

        Raises:
            PersistenceFailureError: 文件存在但读取失败
        """
        index_path = self.index_path(index_name)
        if not index_path.exists():
            logger.info(f"FAISS索引文件不存在: {index_path}")
            return None

        try:
            index = faiss.read_index(str(index_path))
        except (OSError, RuntimeError) as e:
            logger.error(f"加载FAISS索引失败: {e}")
            raise PersistenceFailureError(f"加载FAISS索引失败: {e}", path=str(index_path))

        logger.info(f"FAISS索引已加载: {index_path}, 向量数={index.ntotal}")
        return index

    async def delete_index(self, index_name: str = DEFAULT_INDEX_NAME) -> bool:
        """
        删除索引文件

        Returns:
            bool: 文件此前是否存在
        """
        index_path = self.index_path(index_name)
        if not index_path.exists():
            return False
        try:
            index_path.unlink()
        except OSError as e:
            raise PersistenceFailureError(f"删除FAISS索引失败: {e}", path=str(index_path))
        logger.info(f"FAISS索引已删除: {index_path}")
        return True

    def get_index_info(self, index_name: str = DEFAULT_INDEX_NAME) -> Optional[Dict[str, Any]]:
        """
        获取索引文件信息

        Returns:
            Optional[Dict[str, Any]]: 文件大小和修改时间，不存在时返回None
        """
        index_path = self.index_path(index_name)
        if not index_path.exists():
            return None
        stat = index_path.stat()
        return {
            "name": index_name,
            "file_size": stat.st_size,
            "modified_time": stat.st_mtime,
        }
