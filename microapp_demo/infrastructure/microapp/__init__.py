"""小程序服务端接口"""
from .client import MicroAppAPIError, MicroAppClient, MicroAppError

__all__ = ["MicroAppClient", "MicroAppError", "MicroAppAPIError"]
