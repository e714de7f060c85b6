"""parallel-cmd 应用入口。

包含命令行解析、日志配置和主入口点。
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from typing import Sequence

from . import __version__
from .config import Config, OutputFormat, get_config
from .orchestrator import Orchestrator

__all__ = ["build_parser", "apply_arguments", "configure_logging", "main"]

logger = logging.getLogger(__name__)

PROG = "parallel-cmd"


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    """创建命令行解析器。"""
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Run several commands in parallel and show their output side by side.",
    )
    parser.add_argument(
        "-o", "--output",
        choices=[mode.value for mode in OutputFormat],
        default=None,
        help="Determines how command output is displayed. 'interlaced' (default) outputs "
             "each line as it is received, prefixed by the index of the command. 'boxed' "
             "outputs each command in its own separate box.",
    )
    parser.add_argument(
        "-b", "--boxsize",
        type=_positive_int,
        default=None,
        help="The height of each command's output box when using the boxed output. "
             "Defaults to an even distribution of the console's height.",
    )
    parser.add_argument(
        "-w", "--workingdir",
        default=None,
        help="The default working directory to use for commands. "
             "If not specified, the current working directory is used.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "commands",
        nargs="*",
        help="One or more commands to run, including any arguments. Each command may "
             "begin with <path> to specify its working directory, and may quote the "
             'executable: <C:\\work>"my app.exe" --flag',
    )
    return parser


def apply_arguments(config: Config, args: argparse.Namespace) -> Config:
    """命令行参数覆盖环境变量配置。"""
    overrides = {}
    if args.output is not None:
        overrides["output_format"] = OutputFormat.from_string(args.output)
    if args.boxsize is not None:
        overrides["box_size"] = args.boxsize
    if args.workingdir is not None:
        overrides["working_dir"] = args.workingdir
    return dataclasses.replace(config, **overrides)


def configure_logging(config: Config) -> None:
    """配置日志输出。

    默认只输出 WARNING 以上到 stderr，避免破坏 boxed 模式的显示；
    PCMD_LOG_DEBUG 模式下 DEBUG 日志输出到临时文件。
    """
    handler: logging.Handler
    if config.log_debug and config.log_file:
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
        log_level = logging.DEBUG
    else:
        handler = logging.StreamHandler(sys.stderr)
        log_level = logging.WARNING

    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(level=logging.WARNING, handlers=[handler])
    # 只对 parallel_cmd 命名空间启用详细日志
    logging.getLogger("parallel_cmd").setLevel(log_level)


async def run_commands(commands: Sequence[str], config: Config) -> None:
    """运行所有命令。"""
    logger.info(f"Starting {len(commands)} command(s): {config}")
    orchestrator = Orchestrator(commands, config)
    await orchestrator.run()


def main(argv: Sequence[str] | None = None) -> int:
    """主入口点。

    Returns:
        退出码：正常结束为 0（与子进程退出码无关），任何错误为 1
    """
    args = build_parser().parse_args(argv)
    config = apply_arguments(get_config(), args)
    configure_logging(config)

    if config.log_debug and config.log_file:
        print(f"{PROG}: debug log: {config.log_file}", file=sys.stderr)

    try:
        asyncio.run(run_commands(args.commands, config))
    except Exception as e:
        logger.debug("Unhandled error", exc_info=True)
        print(f"{PROG}: error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
