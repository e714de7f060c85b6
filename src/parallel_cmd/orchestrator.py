"""命令编排模块。

负责整个运行过程：
- 解析所有命令字符串（任何格式错误都在启动进程前中止）
- 创建唯一的输出多路复用器，并按命令顺序为每条命令创建输出 sink
- 安装中断处理器（第一次中断触发共享的取消信号）
- 并发运行所有 ProcessRunner，并等待全部结束

单个命令的启动失败不会取消其它命令；全部结束后再抛出第一个错误。
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Sequence

import anyio

from .commands import CommandDescriptor, parse_command
from .config import Config
from .errors import NoCommandsError
from .output import OutputSink, Terminal, create_multiplexer
from .runtime import CancellationSignal, ProcessOutcome, ProcessRunner, ProcessSpec
from .signal_manager import SignalManager

__all__ = ["Orchestrator", "RunnerInfo"]

logger = logging.getLogger(__name__)


@dataclass
class RunnerInfo:
    """单条命令的运行信息。

    Attributes:
        index: 命令序号（即 sink 序号）
        command: 命令描述符
        spec: 进程规格
        started_at: 开始时间
        finished_at: 结束时间（未结束为 None）
        outcome: 运行结果（未结束或启动失败为 None）
        error: 启动失败等错误
    """

    index: int
    command: CommandDescriptor
    spec: ProcessSpec
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    outcome: Optional[ProcessOutcome] = None
    error: Optional[Exception] = None

    def __repr__(self) -> str:
        if self.error is not None:
            status = f"error={type(self.error).__name__}"
        elif self.outcome is not None:
            status = f"{self.outcome.status.value}({self.outcome.returncode})"
        else:
            status = "running" if self.started_at else "pending"
        return (
            f"RunnerInfo(index={self.index}, "
            f"command={self.command.display_text!r}, "
            f"status={status})"
        )


@dataclass
class Orchestrator:
    """并发运行所有命令。

    Example:
        ```python
        orchestrator = Orchestrator(["npm run dev", "<api>dotnet watch"], config)
        infos = await orchestrator.run()
        ```

    Attributes:
        commands: 命令字符串列表
        config: 运行配置
        terminal: 终端设备（默认 ANSI 标准输出）
        handle_signals: 是否安装 SIGINT/SIGTERM 处理器
        runner_factory: 创建 ProcessRunner 的工厂（便于测试）
    """

    commands: Sequence[str]
    config: Config
    terminal: Optional[Terminal] = None
    handle_signals: bool = True
    runner_factory: Callable[[], ProcessRunner] = ProcessRunner
    infos: list[RunnerInfo] = field(default_factory=list, init=False)

    def prepare(self) -> list[RunnerInfo]:
        """解析命令并生成进程规格。

        Raises:
            NoCommandsError: 没有命令
            CommandFormatError: 命令字符串格式错误
        """
        if not self.commands:
            raise NoCommandsError()

        descriptors = [parse_command(command) for command in self.commands]
        fallback_cwd = os.getcwd()

        infos = []
        for index, descriptor in enumerate(descriptors):
            spec = ProcessSpec(
                argv=descriptor.argv,
                cwd=Path(descriptor.resolve_cwd(self.config.working_dir, fallback_cwd)),
                display_name=descriptor.display_text,
            )
            infos.append(RunnerInfo(index=index, command=descriptor, spec=spec))
        return infos

    async def run(self, cancel_signal: Optional[CancellationSignal] = None) -> list[RunnerInfo]:
        """运行所有命令直到全部结束或被取消。

        Args:
            cancel_signal: 外部提供的取消信号（默认新建）

        Returns:
            每条命令的运行信息（按命令顺序）

        Raises:
            NoCommandsError: 没有命令
            CommandFormatError: 命令字符串格式错误
            SpawnError: 任一命令启动失败（在所有命令结束后抛出）
        """
        self.infos = self.prepare()
        if cancel_signal is None:
            cancel_signal = CancellationSignal()

        signal_manager = SignalManager(cancel_signal) if self.handle_signals else None

        with create_multiplexer(self.config, len(self.infos), self.terminal) as multiplexer:
            sinks = [multiplexer.create(info.command, info.index) for info in self.infos]

            if signal_manager:
                await signal_manager.start()
            try:
                async with anyio.create_task_group() as tg:
                    for info, sink in zip(self.infos, sinks):
                        tg.start_soon(self._run_one, info, sink, cancel_signal)
            finally:
                if signal_manager:
                    await signal_manager.stop()

        errors = [info.error for info in self.infos if info.error is not None]
        if errors:
            for extra in errors[1:]:
                logger.error(f"Additional failure: {extra}")
            raise errors[0]

        logger.debug(f"All commands finished: {self.infos}")
        return self.infos

    async def _run_one(
        self,
        info: RunnerInfo,
        sink: OutputSink,
        cancel_signal: CancellationSignal,
    ) -> None:
        """运行单条命令，记录结果。

        错误被记录到 info.error 而不是抛出，避免取消其它命令。
        """
        runner = self.runner_factory()
        info.started_at = datetime.now()
        try:
            info.outcome = await runner.run(info.spec, sink, cancel_signal)
        except Exception as e:
            logger.error(f"Command [{info.index}] failed: {e}")
            info.error = e
        finally:
            info.finished_at = datetime.now()
            logger.debug(f"Command finished: {info}")
