"""基础设施层：日志、签名、服务生命周期、小程序接口客户端"""

from .logging import setup_logging
from .server import ServerManager, ServerStartupError, ServerState, ShutdownTimeoutError
from .signer import SIG_METHOD, sign_payload

__all__ = [
    "setup_logging",
    "ServerManager",
    "ServerState",
    "ServerStartupError",
    "ShutdownTimeoutError",
    "SIG_METHOD",
    "sign_payload",
]
