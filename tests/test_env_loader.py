import os
from pathlib import Path

from ipsecdiag.env_loader import _parse_env_line, read_env_file


def test_parse_env_line_variants() -> None:
    assert _parse_env_line("# comment") is None
    assert _parse_env_line("") is None
    assert _parse_env_line("no-equals-sign") is None
    assert _parse_env_line("export A=1") == ("A", "1")
    assert _parse_env_line('B="quoted # not a comment"') == ("B", "quoted # not a comment")
    assert _parse_env_line("C='single'") == ("C", "single")
    assert _parse_env_line("D=value # trailing") == ("D", "value")
    assert _parse_env_line("E=") == ("E", "")


def test_read_env_file_does_not_touch_environ(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("NODE1_NAME", raising=False)
    env_file = tmp_path / "capture-config.env"
    env_file.write_text("NODE1_NAME=w1\nNODE1_NAME=w1b\n", encoding="utf-8")

    assert read_env_file(env_file) == {"NODE1_NAME": "w1b"}
    assert "NODE1_NAME" not in os.environ


def test_read_env_file_missing_returns_empty(tmp_path: Path) -> None:
    assert read_env_file(tmp_path / "absent.env") == {}
