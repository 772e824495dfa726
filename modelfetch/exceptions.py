"""
ModelFetch 统一异常体系

提供分层的异常结构，支持错误代码、错误类别、上下文信息和 JSON 序列化。
所有失败都以结构化错误（code + kind + message）的形式交给调用方。
"""

from typing import Any, Dict, Optional


class ModelFetchError(Exception):
    """ModelFetch 基础异常类"""

    kind: str = "error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self._get_default_code()
        self.context = context or {}

    def _get_default_code(self) -> str:
        """获取默认错误代码"""
        return "E000"

    def to_dict(self) -> Dict[str, Any]:
        """将异常转换为字典格式"""
        return {
            "error": True,
            "code": self.code,
            "kind": self.kind,
            "message": self.message,
            "context": self.context,
            "type": self.__class__.__name__,
        }

    def __str__(self) -> str:
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message


class ConfigError(ModelFetchError):
    """配置相关错误"""

    kind = "config_error"

    def _get_default_code(self) -> str:
        return "E100"


class ConfigValidationError(ConfigError):
    """配置验证错误"""

    def _get_default_code(self) -> str:
        return "E102"


class ManifestError(ConfigError):
    """模型清单格式错误（启动时致命）"""

    kind = "manifest_error"

    def _get_default_code(self) -> str:
        return "E110"


class UnknownModelError(ModelFetchError):
    """请求的模型不在清单中"""

    kind = "unknown_model"

    def __init__(self, model_id: str, context: Optional[Dict[str, Any]] = None):
        self.model_id = model_id
        super().__init__(
            f"未知模型: {model_id}",
            context={"model_id": model_id, **(context or {})},
        )

    def _get_default_code(self) -> str:
        return "E200"


class ModelStateError(ModelFetchError):
    """模型当前状态不允许该操作"""

    kind = "invalid_state"

    def _get_default_code(self) -> str:
        return "E210"


class ModelBusyError(ModelStateError):
    """模型正在下载/校验/解压"""

    kind = "model_busy"

    def _get_default_code(self) -> str:
        return "E211"


# === 下载 ===


class FetchError(ModelFetchError):
    """下载相关错误

    下载失败时暂存文件保留在原处，``bytes_downloaded`` 为磁盘上已有的字节数。
    """

    kind = "fetch_error"

    def __init__(
        self,
        message: str,
        bytes_downloaded: int = 0,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.bytes_downloaded = bytes_downloaded
        context = dict(context or {})
        context.setdefault("bytes_downloaded", bytes_downloaded)
        super().__init__(message, code, context)

    def _get_default_code(self) -> str:
        return "E300"


class FetchTimeoutError(FetchError):
    """连接或读取超时"""

    kind = "timeout"

    def _get_default_code(self) -> str:
        return "E301"


class FetchNetworkError(FetchError):
    """网络错误（连接失败、HTTP 错误状态、传输中断）"""

    kind = "network_error"

    def _get_default_code(self) -> str:
        return "E302"


class FetchSizeMismatchError(FetchError):
    """服务端声明的大小与清单不一致"""

    kind = "size_mismatch"

    def _get_default_code(self) -> str:
        return "E303"


class FetchCancelledError(FetchError):
    """下载被取消"""

    kind = "cancelled"

    def _get_default_code(self) -> str:
        return "E304"


class FetchIOError(FetchError):
    """写入暂存文件失败"""

    kind = "io_error"

    def _get_default_code(self) -> str:
        return "E305"


# === 校验 ===


class VerifyError(ModelFetchError):
    """校验相关错误（可能是损坏或篡改，不会用同一份数据重试）"""

    kind = "verify_error"

    def _get_default_code(self) -> str:
        return "E400"


class VerifySizeMismatchError(VerifyError):
    """文件大小与清单不一致"""

    kind = "size_mismatch"

    def _get_default_code(self) -> str:
        return "E401"


class VerifyDigestMismatchError(VerifyError):
    """SHA-256 与清单不一致"""

    kind = "digest_mismatch"

    def _get_default_code(self) -> str:
        return "E402"


# === 解压 ===


class ExtractError(ModelFetchError):
    """解压相关错误（视为恶意或损坏的归档，丢弃全部解压产物）"""

    kind = "archive_corrupt"

    def _get_default_code(self) -> str:
        return "E500"


class PathTraversalError(ExtractError):
    """归档条目路径逃逸出目标目录"""

    kind = "path_traversal"

    def _get_default_code(self) -> str:
        return "E501"


class UnsupportedEntryTypeError(ExtractError):
    """不支持的条目类型（符号链接、硬链接、设备文件等）"""

    kind = "unsupported_entry_type"

    def _get_default_code(self) -> str:
        return "E502"


class MemberMismatchError(ExtractError):
    """解压结果与清单成员列表不一致"""

    kind = "member_mismatch"

    def _get_default_code(self) -> str:
        return "E503"


class ExtractCancelledError(ExtractError):
    """解压被取消"""

    kind = "cancelled"

    def _get_default_code(self) -> str:
        return "E504"


CANCELLED_ERRORS = (FetchCancelledError, ExtractCancelledError)

__all__ = [
    # 基础异常
    "ModelFetchError",
    # 配置异常
    "ConfigError",
    "ConfigValidationError",
    "ManifestError",
    # 模型状态
    "UnknownModelError",
    "ModelStateError",
    "ModelBusyError",
    # 下载异常
    "FetchError",
    "FetchTimeoutError",
    "FetchNetworkError",
    "FetchSizeMismatchError",
    "FetchCancelledError",
    "FetchIOError",
    # 校验异常
    "VerifyError",
    "VerifySizeMismatchError",
    "VerifyDigestMismatchError",
    # 解压异常
    "ExtractError",
    "PathTraversalError",
    "UnsupportedEntryTypeError",
    "MemberMismatchError",
    "ExtractCancelledError",
    "CANCELLED_ERRORS",
]
