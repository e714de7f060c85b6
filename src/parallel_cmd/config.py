"""PCMD 环境变量配置管理。

环境变量:
    PCMD_OUTPUT: 输出模式
        - interlaced = 每行加命令序号前缀，交错输出 (默认)
        - boxed = 每个命令一个固定区域（盒子）
        - 忽略大小写，无效值回退为 interlaced

    PCMD_BOXSIZE: boxed 模式下每个盒子的高度
        - 正整数
        - 未设置/无效 = 按终端高度平均分配

    PCMD_WORKINGDIR: 命令未指定工作目录时使用的默认工作目录
        - 未设置 = 当前工作目录

    PCMD_RESIZE_INTERVAL: 终端尺寸轮询间隔（秒）
        - 默认 0.5 秒
        - 限制在 0.05-10 秒范围

    PCMD_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (DEBUG 日志输出到临时文件)
        - false/0/no = 关闭 (默认，只输出 WARNING 以上到 stderr)

命令行参数优先于环境变量，见 app.py。
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = ["Config", "OutputFormat", "load_config", "get_config", "reload_config"]

DEFAULT_RESIZE_INTERVAL = 0.5


class OutputFormat(Enum):
    """输出模式。

    - INTERLACED: 每行输出时加上 `[序号]` 前缀
    - BOXED: 每个命令在自己的固定区域内滚动显示
    """

    INTERLACED = "interlaced"
    BOXED = "boxed"

    @classmethod
    def from_string(cls, value: str) -> "OutputFormat":
        """从字符串解析模式。

        Args:
            value: 模式字符串 (interlaced/boxed)

        Returns:
            对应的 OutputFormat 枚举值，无效值返回 INTERLACED
        """
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.INTERLACED  # 默认值


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_output_format(value: str | None) -> OutputFormat:
    """解析输出模式环境变量。"""
    if not value:
        return OutputFormat.INTERLACED
    return OutputFormat.from_string(value)


def _parse_box_size(value: str | None) -> int | None:
    """解析盒子高度环境变量，无效值视为未设置。"""
    if not value:
        return None
    try:
        size = int(value)
    except ValueError:
        return None
    return size if size > 0 else None


def _parse_resize_interval(value: str | None) -> float:
    """解析轮询间隔环境变量。"""
    if not value:
        return DEFAULT_RESIZE_INTERVAL
    try:
        interval = float(value)
        return max(0.05, min(interval, 10.0))  # 限制在 0.05-10 秒范围
    except ValueError:
        return DEFAULT_RESIZE_INTERVAL


@dataclass
class Config:
    """PCMD 配置。

    Attributes:
        output_format: 输出模式
        box_size: 盒子高度（None 表示平均分配）
        working_dir: 默认工作目录（None 表示当前目录）
        resize_interval: 终端尺寸轮询间隔（秒）
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    output_format: OutputFormat = OutputFormat.INTERLACED
    box_size: int | None = None
    working_dir: str | None = None
    resize_interval: float = DEFAULT_RESIZE_INTERVAL
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(output_format={self.output_format.value}, "
            f"box_size={self.box_size}, "
            f"working_dir={self.working_dir}, "
            f"resize_interval={self.resize_interval}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "parallel-cmd"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"pcmd_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("PCMD_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        output_format=_parse_output_format(os.environ.get("PCMD_OUTPUT")),
        box_size=_parse_box_size(os.environ.get("PCMD_BOXSIZE")),
        working_dir=os.environ.get("PCMD_WORKINGDIR") or None,
        resize_interval=_parse_resize_interval(os.environ.get("PCMD_RESIZE_INTERVAL")),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
