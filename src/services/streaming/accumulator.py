"""Text buffers for one stream session."""

from __future__ import annotations


class ChunkAccumulator:
    """Append-only buffer of raw model output.

    `remove` exists only for regions that have already been fully and finally
    extracted; nothing else ever shrinks the buffer.
    """

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._text = ""
        self._dirty = False

    def append(self, chunk: str) -> None:
        if chunk:
            self._parts.append(chunk)
            self._dirty = True

    @property
    def text(self) -> str:
        if self._dirty:
            self._text += "".join(self._parts)
            self._parts.clear()
            self._dirty = False
        return self._text

    def remove(self, start: int, end: int) -> None:
        text = self.text
        if not 0 <= start <= end <= len(text):
            raise IndexError(f"invalid buffer region {start}:{end}")
        self._text = text[:start] + text[end:]

    def __len__(self) -> int:
        return len(self.text)


class TextAccumulator:
    """Batches model deltas into `chunk` event payloads.

    With `emit_threshold=0` every delta is returned immediately by `add`.
    """

    def __init__(self, emit_threshold: int = 0) -> None:
        if emit_threshold < 0:
            raise ValueError("emit_threshold must be >= 0")
        self.emit_threshold = emit_threshold
        self._seen: list[str] = []
        self._pending: list[str] = []
        self._pending_len = 0

    def add(self, text: str) -> str | None:
        """Record `text`; return the batched text once the threshold is reached."""
        if not text:
            return None
        self._seen.append(text)
        self._pending.append(text)
        self._pending_len += len(text)
        if self._pending_len >= self.emit_threshold:
            return self.flush()
        return None

    def flush(self) -> str:
        pending = "".join(self._pending)
        self._pending.clear()
        self._pending_len = 0
        return pending

    @property
    def text(self) -> str:
        return "".join(self._seen)
