"""Vision hex detection: reply parsing and the messages.create contract."""
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from config.settings import AIConfig
from tools.hex_detection import HexDetectionError, HexDetector, parse_hex_reply


def _reply(text):
    return SimpleNamespace(content=[SimpleNamespace(text=text)])


@pytest.mark.parametrize("text,expected", [
    ('{"hex": "#aa00ff", "confidence": 0.9}', "#AA00FF"),
    ('```json\n{"hex": "12ab34"}\n```', "#12AB34"),
    ("The base colour is roughly #0f0f0f under glare.", "#0F0F0F"),
    ('{"hex": "red", "error": "too dark"}', None),
    ("", None),
])
def test_parse_hex_reply(text, expected):
    assert parse_hex_reply(text) == expected


def test_detect_sends_inline_bytes_as_base64():
    client = MagicMock()
    client.messages.create.return_value = _reply('{"hex": "#ff0000"}')
    detector = HexDetector(AIConfig(api_key="k", hex_model="vision-model"), client=client)

    assert detector.detect(content=b"abc", mime_type="image/png") == "#FF0000"

    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["model"] == "vision-model"
    image = kwargs["messages"][0]["content"][0]
    assert image["source"] == {"type": "base64", "media_type": "image/png", "data": "YWJj"}


def test_detect_sends_http_url():
    client = MagicMock()
    client.messages.create.return_value = _reply("no colour here")
    detector = HexDetector(AIConfig(api_key="k"), client=client)

    assert detector.detect(image_url="https://cdn.example.com/a.jpg") is None
    image = client.messages.create.call_args.kwargs["messages"][0]["content"][0]
    assert image["source"] == {"type": "url", "url": "https://cdn.example.com/a.jpg"}


def test_detect_without_image_raises():
    detector = HexDetector(AIConfig(api_key="k"), client=MagicMock())
    with pytest.raises(HexDetectionError):
        detector.detect(image_url="blob://not-fetchable")


def test_detect_wraps_client_errors():
    client = MagicMock()
    client.messages.create.side_effect = RuntimeError("overloaded")
    detector = HexDetector(AIConfig(api_key="k"), client=client)
    with pytest.raises(HexDetectionError, match="overloaded"):
        detector.detect(image_url="https://cdn.example.com/a.jpg")
