"""parallel-cmd - 并行运行多个命令并同时显示它们的输出。

环境变量:
    PCMD_OUTPUT: 输出模式 interlaced | boxed (默认 interlaced)
    PCMD_BOXSIZE: boxed 模式下每个盒子的高度
    PCMD_WORKINGDIR: 默认工作目录
    PCMD_RESIZE_INTERVAL: 终端尺寸轮询间隔 (默认 0.5 秒)
    PCMD_LOG_DEBUG: 日志调试模式 (默认 false)

用法:
    parallel-cmd "npm run dev" "<api>dotnet watch run"
    parallel-cmd --output boxed "npm run dev" "pytest -f"
"""

__version__ = "0.1.0"

from .app import main  # noqa: E402


__all__ = ["__version__", "main"]
