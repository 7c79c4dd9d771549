"""字节跳动小程序服务端接口演示"""

__version__ = "1.0.0"
