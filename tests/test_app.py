"""CLI 入口测试。

测试参数解析、进程组构建、退出码合并以及端到端运行。
"""

from __future__ import annotations

import shlex
import sys

import pytest

from procman.app import build_group, build_parser, exit_code_for, main, run
from procman.errors import ProcessStateError

pytestmark = pytest.mark.timeout(60)


def py_command(code: str) -> str:
    """运行 Python 片段的命令行字符串。"""
    return shlex.join([sys.executable, "-c", code])


def parse(*argv: str):
    return build_parser().parse_args(["--poll-interval", "0.02", *argv])


class TestExitCode:
    """退出码合并测试。"""

    def test_all_zero(self):
        assert exit_code_for({"a": 0, "b": 0}) == 0

    def test_highest_wins(self):
        assert exit_code_for({"a": 2, "b": 5, "c": 0}) == 5

    def test_signal_maps_to_128_plus(self):
        assert exit_code_for({"a": -15}) == 143

    def test_unknown_code(self):
        assert exit_code_for({"a": 0, "b": None}) == 1

    def test_launch_failure(self):
        assert exit_code_for({"a": 0}, launch_failed=True) == 1

    def test_empty(self):
        assert exit_code_for({}) == 0


class TestParser:
    """参数解析测试。"""

    def test_defaults_from_config(self):
        args = build_parser().parse_args(["echo hi"])
        assert args.commands == ["echo hi"]
        assert args.poll_interval == 0.5
        assert args.wrap == 80
        assert args.named == []
        assert args.env == []

    def test_named_and_env(self):
        args = build_parser().parse_args(
            ["-c", "web=python -m http.server", "--env", "A=1", "--env", "B=x=y"]
        )
        assert args.named == [("web", "python -m http.server")]
        assert args.env == [("A", "1"), ("B", "x=y")]

    @pytest.mark.parametrize(
        "argv",
        [["-c", "no-equals"], ["-c", "=cmd"], ["-c", "id="], ["--env", "NOVALUE"],
         ["--poll-interval", "0", "x"], ["--wrap", "-3", "x"]],
    )
    def test_rejects_bad_values(self, argv):
        with pytest.raises(SystemExit):
            build_parser().parse_args(argv)


class TestBuildGroup:
    """进程组构建测试。"""

    def test_ids_and_options(self, tmp_path):
        args = build_parser().parse_args(
            ["--quiet-stdout", "--cwd", str(tmp_path), "--env", "A=1", "--wrap", "40",
             "-c", "web=echo web", "echo one", "echo two"]
        )
        group = build_group(args)

        assert group.ids == ["web", "p1", "p2"]
        for handle in group:
            assert handle.print_stdout is False
            assert handle.print_stderr is True
            assert handle.working_dir == tmp_path
            assert handle.env == {"A": "1"}
            assert handle.wrap == 40

    def test_duplicate_ids(self):
        args = build_parser().parse_args(["-c", "p1=echo a", "echo b"])
        with pytest.raises(ProcessStateError):
            build_group(args)


@pytest.mark.posix
class TestRun:
    """端到端运行测试。"""

    @pytest.mark.asyncio
    async def test_prints_prefixed_output(self, capsys):
        code = await run(parse(py_command("print('hi')"), "-c", f"web={py_command('print(1)')}"))
        out = capsys.readouterr().out

        assert code == 0
        assert "p1: hi" in out
        assert "web: 1" in out
        assert "Process p1 finished with exit value 0." in out
        assert "Process web finished with exit value 0." in out
        assert out.count("Process p1 finished with exit value 0.") == 1

    @pytest.mark.asyncio
    async def test_highest_exit_code(self, capsys):
        code = await run(parse(py_command("import sys; sys.exit(3)"), py_command("pass")))
        assert code == 3

    @pytest.mark.asyncio
    async def test_launch_failure(self, capsys):
        code = await run(parse("procman-definitely-not-a-command", py_command("pass")))
        captured = capsys.readouterr()

        assert code == 1
        assert "could not be launched" in captured.err

    @pytest.mark.asyncio
    async def test_quiet_stdout(self, capsys):
        code = await run(parse("--quiet-stdout", py_command("print('secret')")))
        out = capsys.readouterr().out

        assert code == 0
        assert "secret" not in out

    @pytest.mark.asyncio
    async def test_status_every(self, capsys):
        code = await run(
            parse("--status-every", "0.1", py_command("import time; time.sleep(0.6)"))
        )
        out = capsys.readouterr().out

        assert code == 0
        assert "Process p1 is still running." in out


class TestMain:
    """main() 测试。"""

    def test_requires_a_command(self):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2

    def test_duplicate_ids_is_usage_error(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", "p1=echo a", "echo b"])
        assert exc_info.value.code == 2

    @pytest.mark.posix
    def test_exit_code_propagates(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--poll-interval", "0.02", py_command("import sys; sys.exit(4)")])
        assert exc_info.value.code == 4
