"""
文件名: exceptions.py
功能: 自定义异常类，提供统一的异常处理机制
"""

from typing import Any, Dict, Optional


class RetentionException(Exception):
    """
    记忆保留引擎通用异常基类

    所有自定义异常都应继承此类，便于统一捕获和处理。

    属性:
        message (str): 异常信息
        details (Dict[str, Any], optional): 异常详细信息
        error_code (str, optional): 错误代码
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        self.message = message  # 异常信息
        self.details = details or {}  # 异常详细信息
        self.error_code = error_code  # 错误代码
        super().__init__(self.message)

    def __str__(self) -> str:
        """返回异常的字符串表示"""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """将异常转换为字典格式，便于上层序列化"""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class ConfigError(RetentionException):
    """
    配置错误异常

    当配置文件缺失、格式错误或必需配置项缺失时抛出。
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            details=details,
            error_code="CONFIG_ERROR"
        )


class ValidationError(RetentionException):
    """
    数据验证错误异常

    当输入数据不符合预期格式或验证规则时抛出。
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            details=details,
            error_code="VALIDATION_ERROR"
        )


class NotInitializedError(RetentionException):
    """
    未初始化异常

    在组件完成 initialize() 之前调用其操作时抛出。

    属性:
        component (str): 组件名称
    """

    def __init__(self, component: str, details: Optional[Dict[str, Any]] = None):
        self.component = component  # 组件名称
        super().__init__(
            message=f"{component} 尚未初始化",
            details={**(details or {}), "component": component},
            error_code="NOT_INITIALIZED"
        )


class DimensionMismatchError(RetentionException):
    """
    向量维度不匹配异常

    当写入或查询的向量长度与存储维度 D 不一致时抛出。
    """

    def __init__(
        self,
        expected: int,
        actual: int,
        details: Optional[Dict[str, Any]] = None
    ):
        self.expected = expected
        self.actual = actual
        super().__init__(
            message=f"向量维度不匹配: 期望={expected}, 实际={actual}",
            details={**(details or {}), "expected": expected, "actual": actual},
            error_code="DIMENSION_MISMATCH"
        )


class AlreadyRunningError(RetentionException):
    """
    重复运行异常

    当后台调度已经启动又被再次启动时抛出。
    维护任务的重入不会抛出此异常，而是返回上一次的结果。
    """

    def __init__(self, routine: str, details: Optional[Dict[str, Any]] = None):
        self.routine = routine
        super().__init__(
            message=f"{routine} 正在运行",
            details={**(details or {}), "routine": routine},
            error_code="ALREADY_RUNNING"
        )


class ProviderUnavailableError(RetentionException):
    """
    外部服务不可用异常

    当向量化服务或摘要服务调用失败时抛出，调用方应走确定性的本地降级路径。

    属性:
        provider (str): 服务名称
    """

    def __init__(
        self,
        message: str,
        provider: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.provider = provider  # 服务名称
        super().__init__(
            message=message,
            details={**(details or {}), "provider": provider},
            error_code="PROVIDER_UNAVAILABLE"
        )


class PersistenceFailureError(RetentionException):
    """
    持久化失败异常

    当磁盘读写（文档表、索引文件、审计日志）失败时抛出。
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            details={**(details or {}), "path": path},
            error_code="PERSISTENCE_FAILURE"
        )
