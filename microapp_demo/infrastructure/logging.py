"""日志配置模块"""

import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"


def setup_logging(level: str = "INFO", log_dir: Optional[Union[str, Path]] = "logs") -> None:
    """
    配置日志系统：控制台输出 + 按天轮转的日志文件

    Args:
        level: 日志级别
        log_dir: 日志目录，为空时只输出到控制台
    """
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)

    if not log_dir:
        logger.info("日志系统已配置（仅控制台输出）")
        return

    logs_dir = Path(log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    # 主日志文件，每天午夜轮转，保留30天
    logger.add(
        logs_dir / "app_{time:YYYY-MM-DD}.log",
        rotation="00:00",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
        level=level,
        format=LOG_FORMAT,
        enqueue=True,
    )

    # 错误日志文件（只记录 ERROR 及以上级别）
    logger.add(
        logs_dir / "error_{time:YYYY-MM-DD}.log",
        rotation="00:00",
        retention="90 days",
        compression="zip",
        encoding="utf-8",
        level="ERROR",
        format=LOG_FORMAT,
        enqueue=True,
    )

    logger.info(f"日志系统已配置，日志文件保存在 {logs_dir}/ 目录")
