import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from loguru import logger

DEFAULT_LISTEN = ":8080"
DEFAULT_API_BASE = "https://developer.toutiao.com"
DEFAULT_SHUTDOWN_TIMEOUT = 5.0


class ConfigError(ValueError):
    """配置项格式错误"""


@dataclass(frozen=True)
class Settings:
    """
    进程级配置，启动时构造一次，通过 app.state 注入各个 handler。

    - appid / secret：小程序凭证
    - listen：监听地址，支持 "host:port" 或 ":port"
    """

    appid: str = ""
    secret: str = ""
    listen: str = DEFAULT_LISTEN
    api_base: str = DEFAULT_API_BASE
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    log_level: str = "INFO"
    log_dir: Optional[str] = "logs"

    @property
    def listen_address(self) -> Tuple[str, int]:
        return parse_listen_address(self.listen)


def _env_file_path() -> Path:
    """.env 文件路径（当前工作目录）"""
    return Path.cwd() / ".env"


def load_env_var(key: str, default: str = "") -> str:
    """从 .env 文件读取配置值，不存在时回退到进程环境变量"""
    env_path = _env_file_path()
    if env_path.exists():
        try:
            with env_path.open("r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue
                    if "=" in line:
                        k, v = line.split("=", 1)
                        if k.strip() == key:
                            return v.strip().strip('"').strip("'")
        except OSError as exc:
            logger.error(f"Failed to read .env file: {exc}")

    return os.getenv(key, default)


def parse_listen_address(listen: str) -> Tuple[str, int]:
    """
    解析监听地址。

    ":8080" -> ("0.0.0.0", 8080)
    "127.0.0.1:9000" -> ("127.0.0.1", 9000)
    "[::1]:9000" -> ("::1", 9000)
    """
    raw = (listen or "").strip()
    host, sep, port_raw = raw.rpartition(":")
    if not sep:
        raise ConfigError(f"Invalid LISTEN address {listen!r}, expected host:port")

    host = host.strip("[]") or "0.0.0.0"
    try:
        port = int(port_raw)
    except ValueError:
        raise ConfigError(f"Invalid LISTEN port in {listen!r}") from None

    if not 0 <= port <= 65535:
        raise ConfigError(f"LISTEN port out of range in {listen!r}")
    return host, port


def load_settings() -> Settings:
    """
    Load process settings from .env / environment.

    Only presence of APPID and SECRET is checked; missing values are logged
    and the service still starts.
    """
    appid = load_env_var("APPID")
    secret = load_env_var("SECRET")
    if not appid or not secret:
        logger.warning("[配置] APPID 或 SECRET 未配置，小程序接口调用将会失败")

    listen = load_env_var("LISTEN", DEFAULT_LISTEN) or DEFAULT_LISTEN
    parse_listen_address(listen)

    timeout_raw = load_env_var("SHUTDOWN_TIMEOUT")
    if timeout_raw:
        try:
            shutdown_timeout = float(timeout_raw)
        except ValueError:
            raise ConfigError(f"Invalid SHUTDOWN_TIMEOUT {timeout_raw!r}") from None
        if shutdown_timeout <= 0:
            raise ConfigError(f"SHUTDOWN_TIMEOUT must be positive, got {timeout_raw!r}")
    else:
        shutdown_timeout = DEFAULT_SHUTDOWN_TIMEOUT

    return Settings(
        appid=appid,
        secret=secret,
        listen=listen,
        api_base=(load_env_var("MICROAPP_API_BASE") or DEFAULT_API_BASE).rstrip("/"),
        shutdown_timeout=shutdown_timeout,
        log_level=(load_env_var("LOG_LEVEL") or "INFO").upper(),
        log_dir=load_env_var("LOG_DIR", "logs") or None,
    )
