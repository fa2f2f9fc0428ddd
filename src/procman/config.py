"""procman 环境变量配置管理。

环境变量:
    PROCMAN_POLL_INTERVAL: 轮询间隔（秒）
        - 默认 0.5，限制在 0.01-60 秒范围
        - 间隔过长可能导致子进程输出缓冲区写满而阻塞

    PROCMAN_PRINT_STDOUT / PROCMAN_PRINT_STDERR: 是否打印对应输出流
        - true/1/yes = 打印 (默认)
        - false/0/no = 静默（输出仍会被读取，只是不转发）

    PROCMAN_WRAP: 终端输出的折行宽度
        - 默认 80

    PROCMAN_MAX_LINE_BYTES: 单行最大字节数
        - 默认 65536，超过后强制刷新为一行（不等待换行符）

    PROCMAN_TERM_TIMEOUT: stop() 发送 SIGTERM 后等待的秒数，之后发送 SIGKILL
        - 默认 2.0

    PROCMAN_KILL_TIMEOUT: 发送 SIGKILL 后等待的秒数
        - 默认 1.0

    PROCMAN_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    PROCMAN_SIGINT_MODE: SIGINT (Ctrl+C) 处理模式
        - stop = 停止所有子进程（无运行中的进程则退出）(默认)
        - exit = 直接退出
        - stop_then_exit = 先停止子进程，第二次才退出

    PROCMAN_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config", "SigintMode"]


class SigintMode(Enum):
    """SIGINT 处理模式。

    - STOP: 停止所有子进程，不退出（如果没有运行中的进程则退出）
    - EXIT: 直接退出
    - STOP_THEN_EXIT: 先停止子进程，之后的下一次 SIGINT 退出

    任何模式下，双击窗口内的第二次 SIGINT 都会强制退出。
    """

    STOP = "stop"
    EXIT = "exit"
    STOP_THEN_EXIT = "stop_then_exit"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """从字符串解析模式，无效值返回 STOP。"""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.STOP


DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_WRAP = 80
DEFAULT_MAX_LINE_BYTES = 64 * 1024
DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_KILL_TIMEOUT = 1.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(value: str | None, default: float, low: float, high: float) -> float:
    """解析浮点数环境变量，限制在 [low, high] 范围内，无效值返回默认值。"""
    if not value:
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    if number != number:  # NaN
        return default
    return max(low, min(number, high))


def _parse_int(value: str | None, default: int, low: int) -> int:
    """解析正整数环境变量，小于 low 时返回默认值。"""
    if not value:
        return default
    try:
        number = int(value)
    except ValueError:
        return default
    return number if number >= low else default


@dataclass
class Config:
    """procman 配置。

    Attributes:
        poll_interval: 轮询间隔（秒）
        print_stdout: 是否打印 stdout
        print_stderr: 是否打印 stderr
        wrap: 折行宽度
        max_line_bytes: 单行最大字节数
        term_timeout: SIGTERM 后的等待时间（秒）
        kill_timeout: SIGKILL 后的等待时间（秒）
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_mode: SIGINT 处理模式
        sigint_double_tap_window: 双击退出窗口时间（秒）
    """

    poll_interval: float = DEFAULT_POLL_INTERVAL
    print_stdout: bool = True
    print_stderr: bool = True
    wrap: int = DEFAULT_WRAP
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    log_debug: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.STOP
    sigint_double_tap_window: float = 1.0

    def __repr__(self) -> str:
        return (
            f"Config(poll_interval={self.poll_interval}, "
            f"print_stdout={self.print_stdout}, "
            f"print_stderr={self.print_stderr}, "
            f"wrap={self.wrap}, "
            f"max_line_bytes={self.max_line_bytes}, "
            f"term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_mode={self.sigint_mode.value}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def _generate_log_file_path() -> str:
    """生成临时目录下带时间戳的日志文件路径。"""
    log_dir = Path(tempfile.gettempdir()) / "procman"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"procman_debug_{timestamp}.log"

    return str(log_file.resolve())


def _parse_sigint_mode(value: str | None) -> SigintMode:
    """解析 SIGINT 模式环境变量。"""
    if not value:
        return SigintMode.STOP
    return SigintMode.from_string(value)


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("PROCMAN_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        poll_interval=_parse_float(
            os.environ.get("PROCMAN_POLL_INTERVAL"), DEFAULT_POLL_INTERVAL, 0.01, 60.0
        ),
        print_stdout=_parse_bool(os.environ.get("PROCMAN_PRINT_STDOUT"), default=True),
        print_stderr=_parse_bool(os.environ.get("PROCMAN_PRINT_STDERR"), default=True),
        wrap=_parse_int(os.environ.get("PROCMAN_WRAP"), DEFAULT_WRAP, 1),
        max_line_bytes=_parse_int(
            os.environ.get("PROCMAN_MAX_LINE_BYTES"), DEFAULT_MAX_LINE_BYTES, 1
        ),
        term_timeout=_parse_float(
            os.environ.get("PROCMAN_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT, 0.0, 60.0
        ),
        kill_timeout=_parse_float(
            os.environ.get("PROCMAN_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT, 0.0, 60.0
        ),
        log_debug=log_debug,
        log_file=log_file,
        sigint_mode=_parse_sigint_mode(os.environ.get("PROCMAN_SIGINT_MODE")),
        sigint_double_tap_window=_parse_float(
            os.environ.get("PROCMAN_SIGINT_DOUBLE_TAP_WINDOW"), 1.0, 0.1, 10.0
        ),
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
