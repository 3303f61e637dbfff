from __future__ import annotations

import pytest

from vps_control.agent.ssh import SshTransport, render_env_file
from vps_control.core.config import SshConfig


def test_env_file_uses_real_line_feeds() -> None:
    out = render_env_file({"TRADE_MODE": "paper", "EXCHANGE": "binance", "BINANCE_API_KEY": "abc=def"})

    assert out == b"BINANCE_API_KEY=abc=def\nEXCHANGE=binance\nTRADE_MODE=paper\n"
    assert b"\\n" not in out
    assert b"\r" not in out


def test_empty_env_is_a_single_newline() -> None:
    assert render_env_file({}) == b"\n"


@pytest.mark.parametrize(
    "env",
    [
        {"1BAD": "x"},
        {"BAD-KEY": "x"},
        {"KEY": "line1\nINJECTED=1"},
        {"KEY": "value\r"},
    ],
)
def test_env_file_rejects_unsafe_entries(env: dict[str, str]) -> None:
    with pytest.raises(ValueError):
        render_env_file(env)


def test_destructive_command_is_blocked_before_connecting() -> None:
    transport = SshTransport(SshConfig())
    with pytest.raises(ValueError, match="destructive"):
        transport.run("203.0.113.9", "rm -rf /")
