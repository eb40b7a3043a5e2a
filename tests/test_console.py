import io
from unittest.mock import Mock, patch

import pytest

from agentrelay.console import LocalConsole


def _console():
    stdin = Mock()
    stdin.fileno.return_value = 0
    stdin.isatty.return_value = False
    on_interrupt = Mock()
    return LocalConsole(on_interrupt, stdin=stdin, stdout=io.BytesIO()), on_interrupt


def test_write_mirrors_utf8():
    stdout = io.BytesIO()
    console = LocalConsole(Mock(), stdin=io.BytesIO(), stdout=stdout)

    console.write("❯ 1. Yes\r\n")

    assert stdout.getvalue() == "❯ 1. Yes\r\n".encode()


@pytest.mark.asyncio
async def test_attach_without_tty_is_noop():
    console, _ = _console()
    on_input = Mock()

    console.attach(on_input)
    console.detach()

    on_input.assert_not_called()
    assert console.interactive is False


def test_ctrl_c_requests_shutdown_instead_of_forwarding():
    console, on_interrupt = _console()
    on_input = Mock()

    with patch("agentrelay.console.os.read", return_value=b"\x03"):
        console._on_readable(on_input)

    on_interrupt.assert_called_once_with()
    on_input.assert_not_called()


def test_keystrokes_forwarded():
    console, on_interrupt = _console()
    on_input = Mock()

    with patch("agentrelay.console.os.read", return_value=b"2\r"):
        console._on_readable(on_input)

    on_input.assert_called_once_with(b"2\r")
    on_interrupt.assert_not_called()
