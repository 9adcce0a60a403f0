"""
Lacquer — AI hex detection
Asks Claude (vision) for the single base lacquer colour in a product or swatch
photo and returns it as #RRGGBB. Used by the ingestion worker when a job sets
detectHexFromImage, and by the capture frame re-detection endpoint.
"""
import base64
import json
import logging
import re
from typing import Optional

logger = logging.getLogger("lacquer.tools.hex_detection")

_HEX_ONLY = re.compile(r"^#?([0-9a-fA-F]{6})$")
_HEX_ANYWHERE = re.compile(r"#?[0-9a-fA-F]{6}")

HEX_SYSTEM_PROMPT = (
    "You extract one representative BASE polish colour from a nail polish image. "
    "Ignore background, props, packaging, labels and text, bottle cap, brush, skin tones and glare. "
    "For glitter, shimmer or holo finishes give the underlying base lacquer colour, not the particles. "
    'Always reply with JSON only: {"hex": "#RRGGBB", "confidence": 0..1, "error": "reason if low confidence"}.'
)

HEX_USER_PROMPT = (
    "The image shows a bottle product shot or painted nails. Return exactly one hex for the primary "
    "base shade. If the image is unclear make your best guess and explain in 'error'."
)


class HexDetectionError(RuntimeError):
    """The vision call failed or its reply could not be used."""


def _normalize(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    m = _HEX_ONLY.match(value.strip())
    return f"#{m.group(1).upper()}" if m else None


def parse_hex_reply(text: str) -> Optional[str]:
    """Pull #RRGGBB out of the model reply: JSON first, then any 6-digit hex."""
    raw = (text or "").strip()
    if raw.startswith("```"):
        lines = raw.split("\n")
        raw = "\n".join(lines[1:-1]) if len(lines) > 2 else raw
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        hex_value = _normalize(parsed.get("hex"))
        if parsed.get("error"):
            logger.info(f"Hex detection low confidence: {parsed.get('error')}")
        if hex_value:
            return hex_value
    m = _HEX_ANYWHERE.search(raw)
    return _normalize(m.group(0)) if m else None


class HexDetector:
    """Thin wrapper around anthropic.Anthropic().messages.create for colour detection."""

    def __init__(self, ai_config=None, client=None):
        from config.settings import AIConfig

        self.cfg = ai_config or AIConfig()
        self._client = client

    @property
    def client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(api_key=self.cfg.api_key, timeout=self.cfg.timeout_seconds)
        return self._client

    def detect(self, image_url: Optional[str] = None, content: Optional[bytes] = None,
               mime_type: Optional[str] = None) -> Optional[str]:
        if content:
            source = {
                "type": "base64",
                "media_type": mime_type or "image/jpeg",
                "data": base64.standard_b64encode(content).decode("utf-8"),
            }
        elif image_url and image_url.startswith(("http://", "https://")):
            source = {"type": "url", "url": image_url}
        else:
            raise HexDetectionError("No image content or http(s) URL to analyse")

        try:
            resp = self.client.messages.create(
                model=self.cfg.hex_model,
                max_tokens=self.cfg.max_output_tokens,
                system=HEX_SYSTEM_PROMPT,
                messages=[{
                    "role": "user",
                    "content": [
                        {"type": "image", "source": source},
                        {"type": "text", "text": HEX_USER_PROMPT},
                    ],
                }],
            )
            text = resp.content[0].text
        except Exception as e:
            raise HexDetectionError(f"Hex detection request failed: {e}") from e

        hex_value = parse_hex_reply(text)
        if hex_value is None:
            logger.info(f"Hex detection reply had no usable colour: {text[:200]}")
        return hex_value
