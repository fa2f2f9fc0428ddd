"""procman 命令行入口。

启动一组子进程，带前缀打印它们的输出，在全部结束后以最大退出码退出。

用法:
    procman "ping -c 3 localhost" "python worker.py"
    procman -c web="python -m http.server" --status-every 5
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from collections.abc import Sequence

import anyio

from . import __version__
from .config import get_config
from .errors import ProcessStateError
from .group import ProcessGroup
from .signals import SignalManager

__all__ = ["build_parser", "build_group", "exit_code_for", "run", "main"]

logger = logging.getLogger(__name__)


def _parse_assignment(value: str, what: str) -> tuple[str, str]:
    """解析 KEY=VALUE 形式的参数。"""
    key, sep, rest = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected {what}, got {value!r}")
    return key, rest


def _env_pair(value: str) -> tuple[str, str]:
    return _parse_assignment(value, "KEY=VALUE")


def _named_command(value: str) -> tuple[str, str]:
    handle_id, command = _parse_assignment(value, "ID=COMMAND")
    if not command.strip():
        raise argparse.ArgumentTypeError(f"empty command for id {handle_id!r}")
    return handle_id, command


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from None
    if not number > 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value!r}")
    return number


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value!r}")
    return number


def build_parser() -> argparse.ArgumentParser:
    """构建命令行参数解析器。默认值取自环境变量配置。"""
    config = get_config()
    parser = argparse.ArgumentParser(
        prog="procman",
        description="Run commands side by side and print their output with an id prefix.",
    )
    parser.add_argument("commands", nargs="*", metavar="COMMAND",
                        help="command line to run (ids p1, p2, ...)")
    parser.add_argument("-c", "--command", dest="named", action="append", default=[],
                        type=_named_command, metavar="ID=COMMAND",
                        help="command with an explicit id")
    parser.add_argument("--poll-interval", type=_positive_float, default=config.poll_interval,
                        help=f"seconds between poll cycles (default {config.poll_interval})")
    parser.add_argument("--wrap", type=_positive_int, default=config.wrap,
                        help=f"output wrap width (default {config.wrap})")
    parser.add_argument("--quiet-stdout", action="store_true",
                        help="drain but do not print stdout")
    parser.add_argument("--quiet-stderr", action="store_true",
                        help="drain but do not print stderr")
    parser.add_argument("--cwd", default=None, help="working directory for every command")
    parser.add_argument("--env", action="append", default=[], type=_env_pair,
                        metavar="KEY=VALUE", help="environment override (repeatable)")
    parser.add_argument("--status-every", type=_positive_float, default=None, metavar="S",
                        help="print a status line for every process each S seconds")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="log lifecycle events to stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_group(args: argparse.Namespace) -> ProcessGroup:
    """按解析后的参数创建进程组（尚未启动）。

    Raises:
        ProcessStateError: id 重复
        ValueError: 命令为空
    """
    config = get_config()
    env = dict(args.env) if args.env else None
    options = dict(
        working_dir=args.cwd,
        env=env,
        print_stdout=config.print_stdout and not args.quiet_stdout,
        print_stderr=config.print_stderr and not args.quiet_stderr,
        poll_interval=args.poll_interval,
        wrap=args.wrap,
    )

    group = ProcessGroup()
    for handle_id, command in args.named:
        group.create(command, id=handle_id, **options)
    for index, command in enumerate(args.commands, start=1):
        group.create(command, id=f"p{index}", **options)
    return group


def exit_code_for(codes: dict[str, int | None], launch_failed: bool = False) -> int:
    """把成员退出码合并为 CLI 退出码。

    启动失败或退出码未知时返回 1；被信号杀死的成员按 128+signum 计算；
    其余取最大值。
    """
    if launch_failed:
        return 1
    worst = 0
    for code in codes.values():
        if code is None:
            return 1
        if code < 0:
            code = 128 - code
        worst = max(worst, code)
    return min(worst, 255)


async def _report_status(group: ProcessGroup, every: float) -> None:
    while True:
        await anyio.sleep(every)
        group.check()


async def run(args: argparse.Namespace) -> int:
    """运行进程组直到全部结束或收到关闭信号。

    Returns:
        CLI 退出码
    """
    group = build_group(args)
    signal_manager = SignalManager(group)
    status_task: asyncio.Task | None = None
    shutdown_watcher: asyncio.Task | None = None

    await signal_manager.start()
    try:
        result = await group.start()
        for handle_id, error in result.failures.items():
            print(f"procman: {error}", file=sys.stderr)

        if args.status_every:
            status_task = asyncio.create_task(
                _report_status(group, args.status_every), name="procman-status"
            )

        waiter = asyncio.create_task(group.wait(), name="procman-wait")
        shutdown_watcher = asyncio.create_task(
            signal_manager.wait_for_shutdown(), name="procman-shutdown-watcher"
        )
        await asyncio.wait({waiter, shutdown_watcher}, return_when=asyncio.FIRST_COMPLETED)

        if not waiter.done():
            logger.info("Shutdown requested, stopping all processes")
            await group.stop(silent=True)
        codes = await waiter
    finally:
        for task in (status_task, shutdown_watcher):
            if task and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        await group.stop(silent=True)
        await signal_manager.stop()

    group.check()

    if signal_manager.is_force_exit:
        logger.warning("Force exit requested, terminating with exit code 130")
        return 130  # 128 + SIGINT(2)
    return exit_code_for(codes, launch_failed=not result.ok)


def _configure_logging(verbose: bool) -> None:
    config = get_config()
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr，与子进程的 stderr 混排，只保留告警以上
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO if verbose else logging.WARNING

    # root logger（第三方库）保持 WARNING
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    # 只对 procman 命名空间调整级别
    logging.getLogger("procman").setLevel(log_level)


def main(argv: Sequence[str] | None = None) -> None:
    """主入口点。"""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.commands and not args.named:
        parser.error("at least one command is required")

    _configure_logging(args.verbose)
    logger.debug(f"Starting procman: {get_config()}")

    try:
        code = asyncio.run(run(args))
    except (ProcessStateError, ValueError) as e:
        parser.error(str(e))
    sys.exit(code)


if __name__ == "__main__":
    main()
