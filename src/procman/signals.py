"""把 OS 信号翻译成进程组操作。

宿主进程不会被信号直接杀死，而是：
- SIGINT: 按 SigintMode 停止组内子进程或请求关闭
- SIGINT 连按两次（窗口内）: 强制退出，CLI 以 130 结束
- SIGTERM: 停止所有子进程并请求关闭

相关环境变量：PROCMAN_SIGINT_MODE、PROCMAN_SIGINT_DOUBLE_TAP_WINDOW。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import SigintMode, get_config
from .group import ProcessGroup

__all__ = ["SignalManager", "SigintMode"]

logger = logging.getLogger(__name__)


class SignalManager:
    """进程组的信号策略。

    关闭本身由调用方完成：SignalManager 只停止进程组并置位关闭事件，
    调用方在 wait_for_shutdown() 返回后收尾，再根据 is_force_exit 决定退出码。
    进程组以 silent 方式停止，最终状态由调用方的 group.check() 打印。

    Example:
        ```python
        manager = SignalManager(group)
        await manager.start()
        try:
            await group.start()
            await manager.wait_for_shutdown()
        finally:
            await manager.stop()
        ```

    Attributes:
        group: 受管理的进程组
        sigint_mode: SIGINT 处理模式
        double_tap_window: 两次 SIGINT 视为连按的最大间隔（秒）
    """

    def __init__(
        self,
        group: ProcessGroup,
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        config = get_config()
        self.group = group
        self.sigint_mode = config.sigint_mode if sigint_mode is None else sigint_mode
        self.double_tap_window = (
            config.sigint_double_tap_window if double_tap_window is None else double_tap_window
        )
        self._on_shutdown = on_shutdown

        self._last_sigint: Optional[float] = None
        self._exit_on_next_sigint = False
        self._shutdown_requested = False
        self._force_exit = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._stop_tasks: set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_sigint = None
        self._running = False

    @property
    def is_shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """双击 SIGINT 后为 True。"""
        return self._force_exit

    @property
    def stop_in_flight(self) -> bool:
        """是否有信号触发的 group.stop() 尚未完成。"""
        return any(not task.done() for task in self._stop_tasks)

    # =========================================================================
    # 安装与卸载
    # =========================================================================

    async def start(self) -> None:
        """安装信号处理器。必须在事件循环中调用。"""
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._install()
        self._running = True
        logger.debug(
            f"Signal handlers installed (mode={self.sigint_mode.value}, "
            f"double_tap_window={self.double_tap_window}s)"
        )

    async def stop(self) -> None:
        """卸载信号处理器，并等待信号触发的停止操作完成。"""
        if not self._running:
            return
        self._running = False
        self._uninstall()
        if self._stop_tasks:
            await asyncio.wait(set(self._stop_tasks))
        logger.debug("Signal handlers removed")

    def _install(self) -> None:
        assert self._loop is not None
        if sys.platform == "win32":
            # Windows 没有 add_signal_handler：处理器跑在主线程，再转回事件循环
            loop = self._loop
            self._previous_sigint = signal.signal(
                signal.SIGINT, lambda signum, frame: loop.call_soon_threadsafe(self._handle_sigint)
            )
            return
        self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
        self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)

    def _uninstall(self) -> None:
        try:
            if sys.platform == "win32":
                if self._previous_sigint is not None:
                    signal.signal(signal.SIGINT, self._previous_sigint)
            elif self._loop is not None:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
        except (ValueError, RuntimeError) as e:
            logger.debug(f"Error removing signal handlers: {e}")

    async def wait_for_shutdown(self) -> None:
        """在请求关闭（SIGTERM、满足条件的 SIGINT 或程序化请求）后返回。"""
        if self._shutdown_event is not None:
            await self._shutdown_event.wait()

    def request_graceful_shutdown(self) -> None:
        """程序化请求关闭：停止进程组并置位关闭事件。"""
        logger.info("Programmatic shutdown requested")
        self._stop_group()
        self._shutdown()

    # =========================================================================
    # 信号处理
    # =========================================================================

    def _handle_sigint(self) -> None:
        """处理一次 SIGINT。

        判定顺序：
        1. 距上一次 SIGINT 不超过 double_tap_window：强制退出（所有模式）
        2. EXIT 模式，或 STOP_THEN_EXIT 已停止过进程组：停止并请求关闭
        3. 有运行中的子进程：只停止进程组
        4. 没有运行中的子进程：请求关闭
        """
        now = time.monotonic()
        previous, self._last_sigint = self._last_sigint, now

        if previous is not None and now - previous <= self.double_tap_window:
            logger.warning(
                f"Second SIGINT within {self.double_tap_window}s "
                f"(stop in flight: {self.stop_in_flight}), forcing exit"
            )
            self._force_exit = True
            self._stop_group()
            self._shutdown()
            return

        if self.sigint_mode is SigintMode.EXIT or self._exit_on_next_sigint:
            logger.info(f"SIGINT received (mode={self.sigint_mode.value}), shutting down")
            self._stop_group()
            self._shutdown()
            return

        running = [handle_id for handle_id, alive in self.group.running().items() if alive]
        if not running:
            logger.info("SIGINT received with no running processes, shutting down")
            self._shutdown()
            return

        self._stop_group()
        if self.sigint_mode is SigintMode.STOP_THEN_EXIT:
            self._exit_on_next_sigint = True
            logger.info(
                f"SIGINT received, stopping {', '.join(running)}. "
                f"Press Ctrl+C again to exit."
            )
        else:
            logger.info(
                f"SIGINT received, stopping {', '.join(running)}. "
                f"Press Ctrl+C twice within {self.double_tap_window}s to force exit."
            )

    def _handle_sigterm(self) -> None:
        logger.info("SIGTERM received, stopping all processes")
        self._stop_group()
        self._shutdown()

    def _stop_group(self) -> None:
        """调度一次 group.stop()；已有进行中的停止时不重复调度。"""
        if self.stop_in_flight:
            return
        assert self._loop is not None
        task = self._loop.create_task(self.group.stop(silent=True), name="procman-signal-stop")
        self._stop_tasks.add(task)
        task.add_done_callback(self._stop_finished)

    def _stop_finished(self, task: asyncio.Task) -> None:
        self._stop_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Stopping the process group failed: {task.exception()}")

    def _shutdown(self) -> None:
        self._shutdown_requested = True
        if self._on_shutdown is not None:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")
        if self._shutdown_event is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)
