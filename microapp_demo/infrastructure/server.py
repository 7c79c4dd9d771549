"""HTTP 服务生命周期管理"""

import asyncio
import contextlib
import signal
from enum import Enum
from typing import Any, Optional

import uvicorn
from loguru import logger

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ServerState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class ServerStartupError(RuntimeError):
    """监听启动失败，或在收到停止请求前意外退出"""


class ShutdownTimeoutError(RuntimeError):
    """优雅关闭超时，仍有连接未完成"""


class _ManagedServer(uvicorn.Server):
    """信号由 ServerManager 统一处理，uvicorn 不再自行捕获"""

    def install_signal_handlers(self) -> None:
        pass

    def capture_signals(self):
        return contextlib.nullcontext()


class ServerManager:
    """
    后台任务运行 uvicorn，主任务等待 SIGINT / SIGTERM，
    收到后在 shutdown_timeout 秒内完成优雅关闭。
    """

    def __init__(
        self,
        app: Any,
        host: str = "0.0.0.0",
        port: int = 8080,
        shutdown_timeout: float = 5.0,
        **uvicorn_options: Any,
    ):
        self.shutdown_timeout = shutdown_timeout
        config = uvicorn.Config(
            app,
            host=host,
            port=port,
            # 等待时长由 ServerManager 控制
            timeout_graceful_shutdown=None,
            **uvicorn_options,
        )
        self.server = _ManagedServer(config)
        self.state = ServerState.STARTING
        self.error: Optional[BaseException] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def bound_port(self) -> Optional[int]:
        """实际监听端口（port=0 时由系统分配）"""
        for srv in getattr(self.server, "servers", []) or []:
            for sock in srv.sockets:
                return sock.getsockname()[1]
        return None

    def request_shutdown(self) -> None:
        """请求关闭，信号处理函数和测试都通过这里触发"""
        if self._stop_event is not None:
            self._stop_event.set()

    async def wait_started(self, timeout: float = 5.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while self.state is ServerState.STARTING:
            if asyncio.get_running_loop().time() > deadline:
                raise ServerStartupError("listener did not start in time")
            await asyncio.sleep(0.01)
        if self.state is not ServerState.RUNNING:
            raise ServerStartupError("listener stopped during startup")

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except NotImplementedError:
                # Windows 事件循环不支持 add_signal_handler
                signal.signal(sig, lambda s, _f: loop.call_soon_threadsafe(self._on_signal, s))
            except RuntimeError:
                # 非主线程无法注册信号，只能通过 request_shutdown 关闭
                logger.warning(f"[服务] 无法注册信号 {sig!r}")

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    def _on_signal(self, sig: int) -> None:
        logger.info(f"[服务] 收到信号 {signal.Signals(sig).name}，准备关闭")
        self.request_shutdown()

    async def _listen(self) -> None:
        try:
            await self.server.serve()
        except SystemExit as exc:
            # uvicorn 在端口绑定失败时调用 sys.exit
            raise ServerStartupError(f"listener exited during startup (code {exc.code})") from exc

    async def _watch_started(self, listener: "asyncio.Task[None]") -> None:
        while not self.server.started and not listener.done():
            await asyncio.sleep(0.01)
        if self.server.started and self.state is ServerState.STARTING:
            self.state = ServerState.RUNNING
            logger.info(f"[服务] 已启动，监听端口 {self.bound_port}")

    async def run(self) -> None:
        """运行直到收到停止请求；启动失败或关闭超时时抛出异常"""
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self.state = ServerState.STARTING
        self._install_signal_handlers(loop)

        listener = asyncio.create_task(self._listen())
        watcher = asyncio.create_task(self._watch_started(listener))
        stop_waiter = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait({listener, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
            watcher.cancel()

            if listener.done():
                self.state = ServerState.STOPPED
                exc = listener.exception()
                self.error = exc or ServerStartupError("listener exited unexpectedly")
                if isinstance(self.error, ServerStartupError):
                    raise self.error
                raise ServerStartupError(str(self.error)) from exc

            await self._shutdown(listener)
        finally:
            stop_waiter.cancel()
            self._remove_signal_handlers(loop)

    async def _shutdown(self, listener: "asyncio.Task[None]") -> None:
        self.state = ServerState.SHUTTING_DOWN
        logger.info(f"[服务] 开始优雅关闭，最多等待 {self.shutdown_timeout} 秒")
        self.server.should_exit = True

        try:
            await asyncio.wait_for(asyncio.shield(listener), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            self._abort_in_flight()
            try:
                await asyncio.wait_for(listener, timeout=1.0)
            except asyncio.TimeoutError:
                logger.error("[服务] 监听任务未能在强制断开后退出")
            self.state = ServerState.STOPPED
            self.error = ShutdownTimeoutError(
                f"graceful shutdown exceeded {self.shutdown_timeout}s"
            )
            raise self.error

        self.state = ServerState.STOPPED
        logger.info("[服务] 已停止")

    def _abort_in_flight(self) -> None:
        """超时后断开剩余连接并取消处理中的请求"""
        self.server.force_exit = True
        server_state = self.server.server_state
        connections = list(server_state.connections)
        tasks = list(getattr(server_state, "tasks", ()))
        logger.error(
            f"[服务] 优雅关闭超时，强制断开 {len(connections)} 个连接，取消 {len(tasks)} 个请求"
        )
        for connection in connections:
            transport = getattr(connection, "transport", None)
            if transport is not None:
                transport.abort()
        for task in tasks:
            task.cancel()
