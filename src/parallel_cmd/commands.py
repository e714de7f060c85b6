"""命令描述符与命令字符串解析。

命令字符串语法:
    [<工作目录>]"带空格的可执行文件" 参数...
    [<工作目录>]可执行文件 参数...

例:
    <C:\\work>"my app.exe" --flag
    <../api>npm run dev
    python -m http.server 8000
"""

from __future__ import annotations

import shlex
import sys
from dataclasses import dataclass

from .errors import CommandFormatError

__all__ = ["CommandDescriptor", "parse_command"]

IS_WINDOWS = sys.platform == "win32"


@dataclass(frozen=True)
class CommandDescriptor:
    """一条待运行的命令。

    Attributes:
        executable: 可执行文件
        arguments: 参数字符串（None 表示没有参数）
        working_directory: 命令自带的工作目录（None 表示使用默认值）
    """

    executable: str
    arguments: str | None = None
    working_directory: str | None = None

    @property
    def display_text(self) -> str:
        """头部显示文本：可执行文件 + 参数。"""
        if self.arguments:
            return f"{self.executable} {self.arguments}"
        return self.executable

    @property
    def argv(self) -> list[str]:
        """拆分后的参数列表（第一个元素为可执行文件）。

        Raises:
            CommandFormatError: 参数字符串无法拆分（如引号未闭合）
        """
        if not self.arguments:
            return [self.executable]
        try:
            args = shlex.split(self.arguments, posix=not IS_WINDOWS)
        except ValueError as e:
            raise CommandFormatError(
                f"Cannot split arguments of '{self.executable}': {e}"
            ) from e
        if IS_WINDOWS:
            # Non-POSIX mode keeps the quotes around each token
            args = [_unquote(arg) for arg in args]
        return [self.executable, *args]

    def resolve_cwd(self, default: str | None, fallback: str) -> str:
        """解析工作目录：命令自带 > 全局默认 > 当前目录。"""
        return self.working_directory or default or fallback


def _unquote(token: str) -> str:
    if len(token) >= 2 and token[0] == token[-1] and token[0] in "\"'":
        return token[1:-1]
    return token


def parse_command(command: str) -> CommandDescriptor:
    """解析命令字符串。

    Args:
        command: 命令行上传入的单个命令字符串

    Returns:
        解析后的 CommandDescriptor

    Raises:
        CommandFormatError: `<` 未闭合、只有工作目录、引号未闭合或可执行文件为空
    """
    working_directory: str | None = None
    arguments: str | None = None

    if command.startswith("<"):
        working_dir_end = command.find(">")
        if working_dir_end == -1:
            raise CommandFormatError(
                "Command parameters containing a working directory by starting "
                "with a < must end with a >"
            )
        if working_dir_end == len(command) - 1:
            raise CommandFormatError(
                "Command parameter must also include an actual command, "
                "not only a working directory"
            )
        working_directory = command[1:working_dir_end] or None
        command = command[working_dir_end + 1:]

    if command.startswith('"'):
        command_end = command.find('"', 1)
        if command_end == -1:
            raise CommandFormatError(
                "Command parameters starting with a quote must end with a quote"
            )
        # 跳过紧随引号的一个分隔空格
        rest = command[command_end + 1:]
        if rest.startswith(" "):
            rest = rest[1:]
        arguments = rest or None
        command = command[1:command_end]
    else:
        command_end = command.find(" ")
        if command_end >= 0:
            arguments = command[command_end + 1:] or None
            command = command[:command_end]

    if not command:
        raise CommandFormatError("Command must not be empty")

    return CommandDescriptor(
        executable=command,
        arguments=arguments,
        working_directory=working_directory,
    )
