"""Wire format for execution streams.

Every event is one SSE frame ``data: {"type": ..., "data": ...}\\n\\n``.
JSON is emitted compact and escapes newlines, so the blank line is a safe
frame delimiter. Lines starting with ``:`` are keep-alive comments.
"""
import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

LOG = logging.getLogger('command-runner')

START = 'start'
STDOUT = 'stdout'
STDERR = 'stderr'
INFO = 'info'
ERROR = 'error'
EXIT = 'exit'

TERMINAL_TYPES = (EXIT, ERROR)

PING_FRAME = b': ping\n\n'

SSE_HEADERS = {
    'Cache-Control': 'no-cache',
    'Connection': 'keep-alive',
    'X-Accel-Buffering': 'no',
}


@dataclass(frozen=True)
class StreamEvent:
    type: str
    data: Any

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_TYPES

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type, 'data': self.data}

    def encode(self) -> bytes:
        payload = json.dumps(self.to_dict(), ensure_ascii=False, separators=(',', ':'))
        return f'data: {payload}\n\n'.encode('utf-8')


def start_event(session_id: Optional[str], command: str, argv: List[str], target_container: Optional[str]) -> StreamEvent:
    return StreamEvent(START, {'sessionId': session_id, 'command': command, 'argv': list(argv), 'targetContainer': target_container})


def line_event(stream: str, line: str) -> StreamEvent:
    return StreamEvent(stream, {'line': line})


def info_event(message: str) -> StreamEvent:
    return StreamEvent(INFO, {'message': message})


def error_event(message: str, duration_ms: Optional[int] = None) -> StreamEvent:
    data: Dict[str, Any] = {'message': message}
    if duration_ms is not None:
        data['durationMs'] = duration_ms
    return StreamEvent(ERROR, data)


def exit_event(code: Optional[int], duration_ms: int, signal: Optional[str] = None, log_path: Optional[str] = None) -> StreamEvent:
    data: Dict[str, Any] = {'code': code, 'durationMs': duration_ms}
    if signal:
        data['signal'] = signal
    if log_path:
        data['logPath'] = log_path
    return StreamEvent(EXIT, data)


def decode_frame(frame: str) -> Optional[StreamEvent]:
    """Decode one frame body (without the trailing blank line)."""
    data_lines = []
    for line in frame.split('\n'):
        if not line or line.startswith(':'):
            continue
        if line.startswith('data:'):
            v = line[5:]
            data_lines.append(v[1:] if v.startswith(' ') else v)
    if not data_lines:
        return None
    try:
        obj = json.loads('\n'.join(data_lines))
    except json.JSONDecodeError:
        LOG.debug('dropping undecodable frame: %r', frame[:200])
        return None
    if not isinstance(obj, dict) or 'type' not in obj:
        return None
    return StreamEvent(str(obj['type']), obj.get('data'))


class FrameParser:
    """Incremental frame decoder tolerant of arbitrary chunk boundaries."""

    def __init__(self):
        self._buf = ''
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')

    def feed(self, chunk) -> List[StreamEvent]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buf += chunk.replace('\r\n', '\n')
        out: List[StreamEvent] = []
        while True:
            idx = self._buf.find('\n\n')
            if idx < 0:
                break
            frame, self._buf = self._buf[:idx], self._buf[idx + 2:]
            ev = decode_frame(frame)
            if ev is not None:
                out.append(ev)
        return out

    def finish(self) -> List[StreamEvent]:
        rest = self._buf + self._decoder.decode(b'', final=True)
        self._buf = ''
        if not rest.strip():
            return []
        ev = decode_frame(rest)
        return [ev] if ev is not None else []
