"""Control-channel codec.

A stage's model output mixes narrative for the user with a hidden control
block, e.g.::

    Great, a developer portfolio it is!
    ```CTRL
    {"status": "CONTINUE", "collectedData": {"user_role": "developer"}, "confidence": "HIGH"}
    ```

The codec is fed the *whole* buffer received so far on every call and
returns only the visible text that has not been returned before, plus the
parsed control record once the payload is structurally complete. A bare
form (the tag followed by a JSON object, at the start of a line or after
whitespace or punctuation) is accepted as a fallback for models that forget
the fence.

Text that might still turn into a fence or tag (trailing backticks, a fence
followed by part of a tag, a trailing ``CT`` word) is held back until the
next chunk disambiguates it or ``finalize()`` is called.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Iterable

from pydantic import ValidationError

from ..errors import MalformedControlPayload
from ..models import CodecResult, ControlRecord

logger = logging.getLogger(__name__)

DEFAULT_TAGS: tuple[str, ...] = ("CTRL", "HIDDEN_CONTROL")

# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

_BLANK_RUN_RE = re.compile(r"\n[ \t]*\n(?:[ \t]*\n)+")
_TRAILING_FENCE_RE = re.compile(r"\s*`{3,}$")


def normalize_visible(text: str) -> str:
    """Collapse blank-line runs, drop an unpaired trailing fence and trim."""
    text = _BLANK_RUN_RE.sub("\n\n", text).rstrip()
    if text.endswith("```") and text.count("```") % 2 == 1:
        text = _TRAILING_FENCE_RE.sub("", text)
    return text.strip()


# ---------------------------------------------------------------------------
# Payload completeness and repair
# ---------------------------------------------------------------------------

_PAIRS = {"}": "{", "]": "["}


def _scan_object_end(text: str, start: int) -> int | None:
    """Index just past the brace that closes the object opened at *start*."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(ch)
        elif ch in "}]":
            if not stack or stack.pop() != _PAIRS[ch]:
                return None
            if not stack:
                return i + 1
    return None


def is_complete_payload(text: str) -> bool:
    """True when braces/brackets balance outside strings and the text ends on ``}``."""
    candidate = text.strip()
    if not candidate.startswith("{") or not candidate.endswith("}"):
        return False
    return _scan_object_end(candidate, 0) == len(candidate)


_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_LITERAL_RE = re.compile(r"^(?:true|false|null|-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)$")


def _quote_bare_values(text: str) -> str:
    """Wrap unquoted object values (``"k": developer``) in quotes."""
    out: list[str] = []
    in_string = False
    escaped = False
    i = 0
    while i < len(text):
        ch = text[i]
        out.append(ch)
        i += 1
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
            continue
        if ch != ":":
            continue
        j = i
        while j < len(text) and text[j] in " \t":
            j += 1
        if j >= len(text) or text[j] in '"{[\n\r':
            continue
        k = j
        while k < len(text) and text[k] not in ",}]\n\r":
            k += 1
        value = text[j:k].strip()
        if value and not _LITERAL_RE.match(value):
            out.append(text[i:j])
            out.append(json.dumps(value, ensure_ascii=False))
            out.append(text[j + len(text[j:k].rstrip()):k])
            i = k
    return "".join(out)


def repair_payload(text: str) -> str:
    """Apply the two bounded repairs: drop trailing commas, quote bare values."""
    return _quote_bare_values(_TRAILING_COMMA_RE.sub(r"\1", text))


def _validate(text: str) -> ControlRecord:
    return ControlRecord.model_validate(json.loads(text))


def parse_payload(text: str) -> ControlRecord | None:
    """Parse a complete payload, retrying once after repair.

    Returns ``None`` instead of raising when the payload stays unparseable.
    """
    try:
        return _validate(text)
    except (ValueError, ValidationError) as exc:
        error: Exception = exc
    repaired = repair_payload(text)
    if repaired != text:
        try:
            return _validate(repaired)
        except (ValueError, ValidationError) as exc:
            error = exc
    logger.debug("%s", MalformedControlPayload(text, type(error).__name__))
    return None


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Region:
    start: int
    end: int
    body: str
    closed: bool


class ControlChannelCodec:
    """Incremental splitter for one model turn. Create one per turn or ``reset()``."""

    def __init__(self, tags: Iterable[str] = DEFAULT_TAGS) -> None:
        self.tags = tuple(sorted(set(tags), key=len, reverse=True))
        if not self.tags:
            raise ValueError("At least one control tag is required")
        alternatives = "|".join(re.escape(t) for t in self.tags)
        partial_tags = "|".join(re.escape(t[:n]) for t in self.tags for n in range(1, len(t)))
        full_tags = "|".join(re.escape(t) + r"[ \t]*:?\s*" for t in self.tags)
        self._strict_re = re.compile(r"```[ \t]*(?:" + alternatives + r")(?!\w)")
        # Bare tags may start a line or follow whitespace/punctuation mid-line.
        self._bare_re = re.compile(r"(?<![\w`])[ \t]*(?:" + alternatives + r")[ \t]*:?\s*(?=\{)")
        self._fence_tail_re = re.compile(r"`{1,3}\Z|```[ \t]*(?:" + partial_tags + r")?\Z")
        self._bare_tail_re = re.compile(r"(?<![\w`])(?:" + full_tags + "|" + partial_tags + r")\Z")
        self.reset()

    def reset(self) -> None:
        """Forget everything seen so far."""
        self._buffer = ""
        self._emitted = ""
        self._record: ControlRecord | None = None
        self._failed_payload: str | None = None

    @property
    def buffer(self) -> str:
        return self._buffer

    @property
    def visible_text(self) -> str:
        """All visible text returned so far."""
        return self._emitted

    @property
    def control_record(self) -> ControlRecord | None:
        return self._record

    # -- public API ---------------------------------------------------------

    def process_chunk(self, buffer: str) -> CodecResult:
        """Consume the full buffer so far and return what is newly visible."""
        self._buffer = buffer
        region = self._locate(buffer)
        raw = self._raw_visible(buffer, region)
        if region is None or region.closed:
            raw = raw[:self._holdback_start(raw)]
        new_text = self._emit(normalize_visible(raw))
        if self._record is None and region is not None:
            self._try_parse(region)
        return CodecResult(
            new_visible_text=new_text,
            control_record=self._record,
            is_complete=self._record is not None,
        )

    def finalize(self) -> CodecResult:
        """Release held-back text at end of stream and make a last parse attempt."""
        region = self._locate(self._buffer)
        new_text = self._emit(normalize_visible(self._raw_visible(self._buffer, region)))
        if self._record is None and region is not None:
            self._try_parse(region)
            if self._record is None:
                logger.debug("Turn ended without a complete control record")
        return CodecResult(
            new_visible_text=new_text,
            control_record=self._record,
            is_complete=self._record is not None,
        )

    def extract_visible_text(self, buffer: str) -> str:
        """Single-shot visible text of a complete buffer (no state is touched)."""
        return normalize_visible(self._raw_visible(buffer, self._locate(buffer)))

    # -- internals ----------------------------------------------------------

    def _locate(self, buffer: str) -> _Region | None:
        strict = self._strict_re.search(buffer)
        bare = self._bare_re.search(buffer)
        if strict and (bare is None or strict.start() <= bare.start()):
            body_start = strict.end()
            close = buffer.find("```", body_start)
            if close == -1:
                return _Region(strict.start(), len(buffer), buffer[body_start:], closed=False)
            return _Region(strict.start(), close + 3, buffer[body_start:close], closed=True)
        if bare:
            body_start = bare.end()
            end = _scan_object_end(buffer, body_start)
            if end is None:
                return _Region(bare.start(), len(buffer), buffer[body_start:], closed=False)
            return _Region(bare.start(), end, buffer[body_start:end], closed=True)
        return None

    @staticmethod
    def _raw_visible(buffer: str, region: _Region | None) -> str:
        if region is None:
            return buffer
        return buffer[:region.start] + buffer[region.end:]

    def _holdback_start(self, text: str) -> int:
        """Start index of an ambiguous tail that may still become a fence or tag."""
        cut = len(text)
        for pattern in (self._fence_tail_re, self._bare_tail_re):
            match = pattern.search(text)
            if match:
                cut = min(cut, match.start())
        return cut

    def _emit(self, visible: str) -> str:
        """Return the part of *visible* past what was already emitted."""
        if not visible.startswith(self._emitted) and not self._emitted.startswith(visible):
            # Already-shown text cannot be taken back; resume at the emitted length.
            logger.warning("Visible text diverged from what was already emitted")
        if len(visible) <= len(self._emitted):
            return ""
        new_text = visible[len(self._emitted):]
        self._emitted += new_text
        return new_text

    def _try_parse(self, region: _Region) -> None:
        body = region.body.strip()
        if not region.closed:
            body = body.rstrip("`").strip()
        brace = body.find("{")
        if brace == -1:
            return
        payload = body[brace:]
        if payload == self._failed_payload or not is_complete_payload(payload):
            return
        record = parse_payload(payload)
        if record is None:
            self._failed_payload = payload
            return
        self._record = record
