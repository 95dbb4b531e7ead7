"""
文件名: helpers.py
功能: 辅助工具函数集合
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

# 时钟函数类型：返回 UNIX 时间戳（秒）
Clock = Callable[[], float]

SECONDS_PER_HOUR = 3600.0
SECONDS_PER_DAY = 86400.0


def system_clock() -> float:
    """返回当前 UNIX 时间戳（秒）"""
    return time.time()


def hours_between(earlier: float, later: float) -> float:
    """
    计算两个时间戳之间相差的小时数（不会为负）

    参数:
        earlier (float): 较早的时间戳
        later (float): 较晚的时间戳

    返回:
        float: 小时数
    """
    return max(0.0, (later - earlier) / SECONDS_PER_HOUR)


def days_between(earlier: float, later: float) -> float:
    """计算两个时间戳之间相差的天数（不会为负）"""
    return max(0.0, (later - earlier) / SECONDS_PER_DAY)


def clamp01(value: float) -> float:
    """把数值限制在 [0, 1] 区间"""
    return max(0.0, min(1.0, value))


def generate_id(prefix: str = "mem") -> str:
    """
    生成带前缀的唯一 ID

    示例:
        >>> generate_id("gdpr")
        'gdpr-3f2b8c1d9a7e4b6f'
    """
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


def to_iso(timestamp: Optional[float] = None) -> str:
    """
    把 UNIX 时间戳格式化为 ISO-8601（UTC）

    参数:
        timestamp (float, optional): 时间戳，默认为当前时间
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def truncate_text(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """
    截断文本，如果超过最大长度则添加省略号

    参数:
        text (str): 要截断的文本
        max_length (int): 最大长度，默认 100
        suffix (str): 截断后的后缀

    返回:
        str: 截断后的文本
    """
    if not text or len(text) <= max_length:
        return text
    return text[:max_length - len(suffix)] + suffix
