"""
文件名: logger.py
功能: 引擎日志。处理器只挂在包根日志器 retention_engine 上，
各模块（get_logger 或 logging.getLogger）的日志都经由它输出到控制台和轮转文件。

环境变量:
    RETENTION_LOG_DIR: 日志目录，默认为 logs；设为空字符串时不写文件
    RETENTION_LOG_LEVEL: 控制台日志级别，默认为 INFO
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

import colorlog

ROOT_LOGGER_NAME = "retention_engine"

# 字段值超过该长度时截断（记忆内容不完整写入日志）
MAX_FIELD_LENGTH = 80

_LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold_red",
}

_configured = False


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s%(asctime)s%(reset)s | "
        "%(log_color)s%(levelname)-8s%(reset)s | "
        "%(cyan)s%(name)s%(reset)s | "
        "%(message)s",
        datefmt="%H:%M:%S",
        log_colors=_LOG_COLORS,
    ))
    return handler


def _file_handlers(log_dir: Path) -> list:
    log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    handlers = []
    # engine.log 记录全部级别，engine-error.log 只记录 ERROR 及以上
    for filename, level in (("engine.log", logging.DEBUG), ("engine-error.log", logging.ERROR)):
        handler = RotatingFileHandler(
            log_dir / filename,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8"
        )
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handlers.append(handler)
    return handlers


def configure_logging(
    level: Optional[str] = None,
    log_dir: Optional[str] = None,
    force: bool = False
) -> logging.Logger:
    """
    配置包根日志器

    首次调用 get_logger 时会以环境变量自动配置一次；
    需要改用其他级别或目录时传入 force=True 重新配置。

    Args:
        level: 控制台级别名称，默认读取 RETENTION_LOG_LEVEL
        log_dir: 日志目录，默认读取 RETENTION_LOG_DIR；空字符串表示不写文件
        force: 已配置时是否替换现有处理器

    Returns:
        logging.Logger: 包根日志器
    """
    global _configured
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if _configured and not force:
        return root

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    level_name = (level or os.getenv("RETENTION_LOG_LEVEL", "INFO")).upper()
    root.setLevel(logging.DEBUG)
    root.addHandler(_console_handler(getattr(logging, level_name, logging.INFO)))

    directory = os.getenv("RETENTION_LOG_DIR", "logs") if log_dir is None else log_dir
    if directory:
        for handler in _file_handlers(Path(directory)):
            root.addHandler(handler)

    _configured = True
    return root


def format_field(value: Any) -> str:
    """渲染单个字段值：浮点数保留4位有效数字，过长的文本截断"""
    if isinstance(value, float):
        return f"{value:.4g}"
    text = str(value)
    if len(text) > MAX_FIELD_LENGTH:
        return text[:MAX_FIELD_LENGTH] + "..."
    return text


class StructuredLogger:
    """
    键值对日志记录器

    logger.info("整合完成", removed=5) 输出为 "整合完成 | removed=5"。
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

    @staticmethod
    def _format_message(message: str, **kwargs) -> str:
        if not kwargs:
            return message
        fields = " | ".join(f"{k}={format_field(v)}" for k, v in kwargs.items())
        return f"{message} | {fields}"

    def debug(self, message: str, **kwargs) -> None:
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(self._format_message(message, **kwargs))

    def info(self, message: str, **kwargs) -> None:
        self.logger.info(self._format_message(message, **kwargs))

    def warning(self, message: str, **kwargs) -> None:
        self.logger.warning(self._format_message(message, **kwargs))

    def error(self, message: str, exc_info: bool = False, **kwargs) -> None:
        self.logger.error(self._format_message(message, **kwargs), exc_info=exc_info)


_loggers: Dict[str, StructuredLogger] = {}


def get_logger(name: str) -> StructuredLogger:
    """
    获取模块日志记录器

    示例:
        >>> logger = get_logger(__name__)
        >>> logger.info("删除请求已完成", request_id="gdpr-1", deleted_count=3)
    """
    configure_logging()
    if name not in _loggers:
        _loggers[name] = StructuredLogger(name)
    return _loggers[name]
