import sys
import threading
from typing import List, Optional, TextIO, Tuple

STYLES = {
    'stderr': '\x1b[31m',
    'info': '\x1b[36m',
    'error': '\x1b[1;31m',
    'success': '\x1b[32m',
}
RESET = '\x1b[0m'


class AnsiTerminal:
    """Writes lines to a text stream, coloured by style when enabled."""

    def __init__(self, stream: Optional[TextIO] = None, color: Optional[bool] = None):
        self.stream = stream or sys.stdout
        if color is None:
            color = bool(getattr(self.stream, 'isatty', lambda: False)())
        self.color = color
        self._lock = threading.Lock()

    def writeln(self, text: str, style: str = 'stdout') -> None:
        code = STYLES.get(style) if self.color else None
        out = f'{code}{text}{RESET}' if code and text else text
        with self._lock:
            self.stream.write(out + '\n')
            self.stream.flush()

    def clear(self) -> None:
        if self.color:
            with self._lock:
                self.stream.write('\x1b[2J\x1b[H')
                self.stream.flush()


class BufferTerminal:
    """Keeps every written line in memory."""

    def __init__(self):
        self.lines: List[Tuple[str, str]] = []
        self.clears = 0

    def writeln(self, text: str, style: str = 'stdout') -> None:
        self.lines.append((style, text))

    def clear(self) -> None:
        self.lines = []
        self.clears += 1

    def text(self) -> str:
        return '\n'.join(t for _, t in self.lines)
