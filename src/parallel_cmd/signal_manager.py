"""信号管理模块。

将 OS 中断信号转换为一次性的取消信号：
- SIGINT (Ctrl+C): 触发取消信号（而不是直接退出进程）
- SIGTERM: 同样触发取消信号

默认的进程终止行为被抑制，所有子进程由各自的 ProcessRunner 结束后，
工具正常退出并恢复终端状态。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Optional

from .runtime import CancellationSignal

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    管理 SIGINT 和 SIGTERM 信号的处理：第一次中断触发共享的取消信号，
    之后的中断只记录日志（取消信号只触发一次）。

    Example:
        ```python
        cancel_signal = CancellationSignal()
        signal_manager = SignalManager(cancel_signal)

        async def main():
            await signal_manager.start()
            try:
                # 运行所有命令...
                await run_all(cancel_signal)
            finally:
                await signal_manager.stop()
        ```

    Attributes:
        cancel_signal: 共享的取消信号
        interrupt_count: 已收到的中断次数
    """

    def __init__(self, cancel_signal: CancellationSignal) -> None:
        """初始化信号管理器。

        Args:
            cancel_signal: 共享的取消信号
        """
        self.cancel_signal = cancel_signal

        # 内部状态
        self.interrupt_count: int = 0
        self._original_sigint_handler: Optional[signal.Handlers] = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_cancel_requested(self) -> bool:
        """是否已请求取消。"""
        return self.cancel_signal.is_fired

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """启动信号监听。

        设置 SIGINT 和 SIGTERM 的处理器。
        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._running = True

        if sys.platform != "win32":
            # loop.add_signal_handler 的回调在事件循环线程中执行
            self._loop.add_signal_handler(signal.SIGINT, self._handle_interrupt, "SIGINT")
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_interrupt, "SIGTERM")
            logger.debug("Signal handlers installed (SIGINT, SIGTERM)")
        else:
            # Windows: 使用 signal.signal()，转交给事件循环线程处理
            loop = self._loop
            self._original_sigint_handler = signal.signal(
                signal.SIGINT,
                lambda sig, frame: loop.call_soon_threadsafe(self._handle_interrupt, "SIGINT"),
            )
            logger.debug("SIGINT handler installed on Windows")

    async def stop(self) -> None:
        """停止信号监听。

        恢复原始信号处理器。
        """
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except Exception as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32" and self._original_sigint_handler is not None:
            try:
                signal.signal(signal.SIGINT, self._original_sigint_handler)
            except Exception as e:
                logger.debug(f"Error restoring SIGINT handler: {e}")

        logger.debug("Signal handlers removed")

    def _handle_interrupt(self, signal_name: str) -> None:
        """处理中断信号。

        第一次中断触发取消信号，之后的中断被忽略（只记录日志）。
        """
        self.interrupt_count += 1

        if self.cancel_signal.fire():
            logger.info(f"{signal_name} received, cancelling all commands")
        else:
            logger.info(f"{signal_name} received again, cancellation already in progress")
