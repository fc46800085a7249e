"""Output Buffer — pure buffer/drain for partial text, decoupled from timers.

Invariants:
    - Concatenation of everything released equals everything fed (no byte loss)
    - Release order equals feed order
    - Immediate mode never holds text between calls

Design Decisions:
    - The async driver owns the clock: typewriter mode only asks take(1) per tick
"""


class OutputBuffer:
    """FIFO text buffer released immediately or one character per tick."""

    def __init__(self, typewriter: bool = False):
        self.typewriter = typewriter
        self._pending = ""
        self.released = 0

    def feed(self, text: str) -> str:
        """Buffer text. Returns what should be emitted right away."""
        if not text:
            return ""
        self._pending += text
        if self.typewriter:
            return ""
        return self.drain()

    def take(self, n: int = 1) -> str:
        """Release up to n characters (typewriter tick)."""
        if n <= 0 or not self._pending:
            return ""
        out, self._pending = self._pending[:n], self._pending[n:]
        self.released += len(out)
        return out

    def drain(self) -> str:
        """Release everything pending (flush)."""
        out, self._pending = self._pending, ""
        self.released += len(out)
        return out

    @property
    def pending(self) -> int:
        return len(self._pending)

    def __bool__(self) -> bool:
        return bool(self._pending)
