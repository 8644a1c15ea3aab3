"""Tests for the chat debug log and secret masking."""

import json

import pytest

from logger import chat_log, log_chat_event, mask_secret, setup_chat_logging


@pytest.fixture
def chat_log_file(tmp_path):
    path = tmp_path / "logs" / "chat.log"
    setup_chat_logging(str(path), enabled=True)
    yield path
    for h in chat_log.handlers:
        h.close()
    setup_chat_logging(str(path), enabled=False)


def test_chat_event_written_as_json(chat_log_file):
    log_chat_event("REQUEST", "req_1", backend="local", request={"model": "llama3"})

    text = chat_log_file.read_text(encoding="utf-8")
    entry_text, sep = text.rstrip("\n").rsplit("\n", 1)
    entry = json.loads(entry_text)
    assert entry["type"] == "REQUEST"
    assert entry["requestId"] == "req_1"
    assert entry["backend"] == "local"
    assert entry["request"] == {"model": "llama3"}
    assert sep == "=" * 80


def test_error_entries_use_their_own_separator(chat_log_file):
    log_chat_event("ERROR", "req_2", error="boom")
    assert chat_log_file.read_text(encoding="utf-8").rstrip("\n").endswith("!" * 80)


def test_disabled_chat_log_writes_nothing(tmp_path):
    path = tmp_path / "chat.log"
    setup_chat_logging(str(path), enabled=False)
    log_chat_event("REQUEST", "req_3")
    assert not path.exists()


@pytest.mark.parametrize(
    "value,expected",
    [
        ("", ""),
        (None, ""),
        ("short", "*****"),
        ("sk-abcdef123456", "sk-abc...3456"),
    ],
)
def test_mask_secret(value, expected):
    assert mask_secret(value) == expected
