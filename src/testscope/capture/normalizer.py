"""Streaming removal of terminal control sequences.

Test runners colorize, redraw progress lines with carriage returns and emit
OSC hyperlinks. The normalizer strips all of that while preserving the
newline structure of the output, and tolerates an escape sequence that is
split across two feed() calls by holding the partial prefix back.

    normalizer = OutputNormalizer()
    text = normalizer.feed("\\x1b[31mFAIL\\x1b")   # -> "FAIL"
    text += normalizer.feed("[0m suite.spec")     # -> " suite.spec"
    text += normalizer.flush()
"""

from __future__ import annotations

import re

from testscope.config.constants import MAX_HELD_TAIL_CHARS

# OSC: ESC ] ... (BEL | ESC \)
# CSI: ESC [ params intermediates final
# Everything else: ESC intermediates final (charset selection, keypad mode...)
_SEQUENCE_RE = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b[ -/]*[0-~]"
)

# C0 controls other than \t and \n, plus DEL. \r is included.
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

# SGR parameters left behind when the ESC byte was lost upstream.
_ORPHAN_SGR_RE = re.compile(r"\[\d+(?:;\d+)*m")

# A sequence that has started but not yet reached its final byte.
_PARTIAL_ESC_RE = re.compile(r"\x1b(?:\][^\x07\x1b]*\x1b?|\[[0-?]*[ -/]*|[ -/]*)\Z")

# Orphan SGR prefixes at the very end of cleaned text: "[", "[3", "[31;1".
# A nested run such as "[1[2" is held whole: "mm" would remove both.
_PARTIAL_ORPHAN_RE = re.compile(r"(?:\[[\d;]*)+\Z")


def normalize(text: str) -> str:
    """Strip control sequences from complete text.

    Loops until nothing changes so that removing one sequence can never
    reveal another, which makes the result idempotent.
    """
    previous = None
    while previous != text:
        previous = text
        text = _SEQUENCE_RE.sub("", text)
        text = _CONTROL_RE.sub("", text)
        text = _ORPHAN_SGR_RE.sub("", text)
    return text


def _drop_partial_escape(text: str) -> str:
    """Remove an unterminated escape at the end of text."""
    match = _PARTIAL_ESC_RE.search(text)
    return text[: match.start()] if match else text


class OutputNormalizer:
    """Per-stream normalizer. Not shared between streams."""

    def __init__(self) -> None:
        self._pending = ""

    @property
    def pending(self) -> str:
        """Text held back until the next feed() or flush()."""
        return self._pending

    def feed(self, chunk: str) -> str:
        """Normalize a chunk, holding back any trailing partial sequence."""
        text = self._pending + chunk
        self._pending = ""
        if not text:
            return ""

        raw_tail = ""
        match = _PARTIAL_ESC_RE.search(text)
        if match and len(text) - match.start() <= MAX_HELD_TAIL_CHARS:
            raw_tail = text[match.start() :]
            text = text[: match.start()]

        clean = normalize(text)

        # "[31" at the end may become an orphan SGR once "m" arrives
        orphan = _PARTIAL_ORPHAN_RE.search(clean, max(0, len(clean) - MAX_HELD_TAIL_CHARS))
        if orphan:
            self._pending = clean[orphan.start() :] + raw_tail
            return clean[: orphan.start()]

        self._pending = raw_tail
        return clean

    def flush(self) -> str:
        """Release held-back text. A lone unterminated escape is dropped."""
        text = self._pending
        self._pending = ""
        if not text:
            return ""
        return normalize(_drop_partial_escape(text))
