"""Tests for relctl.output.console module."""

from __future__ import annotations

import pytest

from relctl.output.console import ConsoleProtocol, MockConsole, RichConsole, Style


class TestStyle:
    def test_str_conversion(self) -> None:
        assert str(Style.SUCCESS) == "success"
        assert str(Style.DIM) == "dim"


class TestMockConsole:
    def test_print_captures_message(self) -> None:
        console = MockConsole()
        console.print("hello")
        assert console.outputs[0].message == "hello"
        assert console.outputs[0].style == Style.DEFAULT

    def test_levels_are_prefixed(self) -> None:
        console = MockConsole()
        console.success("done")
        console.error("broken")
        console.warning("careful")
        console.info("fyi")
        assert console.messages == ["OK done", "error: broken", "warning: careful", "info: fyi"]
        assert console.has_error()
        assert console.has_warning()

    def test_table_is_captured(self) -> None:
        console = MockConsole()
        console.table("Matrix results", ["cell", "outcome"], [("a", "success")])
        assert console.tables == [("Matrix results", [["a", "success"]])]

    def test_find(self) -> None:
        console = MockConsole()
        console.print("cell ubuntu-latest/static")
        console.print("cell macos-latest/static")
        assert len(console.find("macos")) == 1

    def test_satisfies_protocol(self) -> None:
        console: ConsoleProtocol = MockConsole()
        console.header("x")


class TestRichConsole:
    def test_brackets_are_not_markup(self, capsys: pytest.CaptureFixture[str]) -> None:
        console = RichConsole()
        console.print("[log](https://example/run)")
        console.error("[red]not markup[/red]")
        out = capsys.readouterr().out
        assert "[log](https://example/run)" in out
        assert "[red]not markup[/red]" in out

    def test_table_renders(self, capsys: pytest.CaptureFixture[str]) -> None:
        RichConsole().table("Run context", ["name", "value"], [["dry_run", "true"]])
        out = capsys.readouterr().out
        assert "dry_run" in out
