from __future__ import annotations

import json
from pathlib import Path

import pytest

from core.cli import _parse_prompt_args, main
from core.errors import ConfigError


def _write_config(tmp_path: Path, body: str = "mcp:\n  servers: {}\n") -> str:
    p = tmp_path / "app.yaml"
    p.write_text(body, encoding="utf-8")
    return str(p)


def test_parse_prompt_args() -> None:
    assert _parse_prompt_args(["name=Ada", "note=a=b", "empty="]) == {"name": "Ada", "note": "a=b", "empty": ""}


def test_parse_prompt_args_rejects_missing_separator() -> None:
    with pytest.raises(ConfigError) as ei:
        _parse_prompt_args(["name"])
    assert ei.value.path == "--arg"


def test_missing_config_exits_2(tmp_path: Path) -> None:
    assert main(["--config", str(tmp_path / "nope.yaml"), "status"]) == 2


def test_status_with_no_servers(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(["--config", _write_config(tmp_path), "status"])

    assert rc == 0
    assert json.loads(capsys.readouterr().out) == []


def test_fake_chat_prints_jsonl_events(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(["--config", _write_config(tmp_path), "chat", "--fake", "--text", "hi"])

    assert rc == 0
    events = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [e["type"] for e in events] == ["text", "text", "done"]
    assert "".join(e["data"]["text"] for e in events[:-1]) == "(fake) hi"
    assert events[-1]["data"]["toolCalls"] == []


def test_fake_chat_sse_format(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(["--config", _write_config(tmp_path), "chat", "--fake", "--format", "sse", "--text", "hi"])

    assert rc == 0
    out = capsys.readouterr().out
    assert out.startswith("event: text\ndata: ")
    assert out.rstrip("\n").split("\n\n")[-1].startswith("event: done\n")


def test_bad_history_file_exits_2(tmp_path: Path) -> None:
    history = tmp_path / "history.json"
    history.write_text('{"role": "user"}', encoding="utf-8")

    rc = main(["--config", _write_config(tmp_path), "chat", "--fake", "--text", "hi", "--history", str(history)])

    assert rc == 2
