"""
行情获取服务异常定义

  AcquisitionError
    ├── ConfigurationError          限流器 / TTL 等级等配置非法，构造时立即失败
    ├── UpstreamFailure             上游获取失败且无可回退的缓存
    ├── TransportActivationFailure  实时推送连接无法启动，模式保持轮询
    └── PersistenceFailure          本地或远端状态存储不可用
"""

from typing import Optional


class AcquisitionError(Exception):
    """服务异常基类"""


class ConfigurationError(AcquisitionError):
    pass


class UpstreamFailure(AcquisitionError):
    """上游数据获取失败（首次获取，没有旧数据可回退）"""

    def __init__(self, key: str, reason: str = ""):
        self.key = key
        self.reason = reason
        message = f"上游数据获取失败: {key}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class TransportActivationFailure(AcquisitionError):
    """实时推送模式启动失败"""

    def __init__(self, trigger: Optional[str], reason: str = ""):
        self.trigger = trigger
        self.reason = reason
        super().__init__(f"实时模式启动失败（触发条件：{trigger}）: {reason}")


class PersistenceFailure(AcquisitionError):
    """状态存储后端不可用"""

    def __init__(self, backend: str, reason: str = ""):
        self.backend = backend
        self.reason = reason
        super().__init__(f"{backend} 状态存储失败: {reason}")
