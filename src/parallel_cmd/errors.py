"""parallel-cmd 异常类。"""

from __future__ import annotations

__all__ = [
    "ParallelCmdError",
    "CommandFormatError",
    "NoCommandsError",
    "SpawnError",
]


class ParallelCmdError(Exception):
    """parallel-cmd 基础异常。"""
    pass


class CommandFormatError(ParallelCmdError):
    """命令字符串格式错误（如 `<` 未闭合、引号未闭合）。"""
    pass


class NoCommandsError(ParallelCmdError):
    """没有提供任何命令。"""

    def __init__(self, message: str = "No commands to run") -> None:
        super().__init__(message)


class SpawnError(ParallelCmdError):
    """子进程启动失败（可执行文件不存在、权限不足等）。

    Attributes:
        command: 命令的显示文本
        cwd: 工作目录
        cause: 底层的 OSError
    """

    def __init__(self, command: str, cwd: str, cause: BaseException) -> None:
        self.command = command
        self.cwd = cwd
        self.cause = cause
        super().__init__(f"Failed to start '{command}' in '{cwd}': {cause}")
