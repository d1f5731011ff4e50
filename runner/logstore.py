import json
import logging
import os
import re
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

LOG = logging.getLogger('command-runner')

LOG_SUFFIX = '.jsonl'
_NAME_RE = re.compile(r'^(?P<ts>\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2})_(?P<cmd>[A-Za-z0-9_.-]+)_(?P<uniq>[0-9a-f]{6})\.jsonl$')


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _append_line(fp: Path, record: Dict[str, Any]) -> bool:
    try:
        fp.parent.mkdir(parents=True, exist_ok=True)
        with open(fp, 'a', encoding='utf-8') as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + '\n')
            f.flush()
        return True
    except (OSError, TypeError, ValueError) as e:
        LOG.error('log write failed for %s: %s', fp, e)
        return False


def log_filename(command_id: str, when: Optional[datetime] = None) -> str:
    when = when or datetime.now(timezone.utc)
    stamp = when.strftime('%Y-%m-%dT%H-%M-%S')
    safe = command_id.replace(':', '.')
    return f'{stamp}_{safe}_{uuid.uuid4().hex[:6]}{LOG_SUFFIX}'


class ExecutionLog:
    """Append-only JSON-lines record of one execution's events.

    The file is opened on the first append and held until ``close()``; every
    line is flushed as it is written.
    """

    def __init__(self, log_dir: Path, command_id: str):
        self.command_id = command_id
        self.path = Path(log_dir) / log_filename(command_id)
        self._lock = threading.Lock()
        self._fh = None

    def _open(self):
        if self._fh is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self.path, 'a', encoding='utf-8')
        return self._fh

    def append(self, record: Dict[str, Any]) -> bool:
        line = {'timestamp': _now_iso(), 'commandId': self.command_id}
        line.update(record)
        with self._lock:
            try:
                fh = self._open()
                fh.write(json.dumps(line, ensure_ascii=False, default=str) + '\n')
                fh.flush()
                return True
            except (OSError, TypeError, ValueError) as e:
                LOG.error('log write failed for %s: %s', self.path, e)
                return False

    def append_event(self, event) -> bool:
        return self.append(event.to_dict())

    def close(self) -> None:
        with self._lock:
            fh, self._fh = self._fh, None
        if fh is not None:
            try:
                fh.close()
            except OSError as e:
                LOG.error('log close failed for %s: %s', self.path, e)


class ServiceLog:
    """Runner-level event log, mirrored to the ``logging`` module."""

    def __init__(self, path: Optional[Path]):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()

    def event(self, event: str, **fields: Any) -> None:
        record = {'timestamp': _now_iso(), 'event': event}
        record.update(fields)
        if event.endswith('_error') or event == 'error':
            LOG.error('%s %s', event, json.dumps(fields, ensure_ascii=False, default=str))
        else:
            LOG.info('%s %s', event, json.dumps(fields, ensure_ascii=False, default=str))
        if self.path is None:
            return
        with self._lock:
            _append_line(self.path, record)


def _last_exit_code(fp: Path) -> Optional[int]:
    try:
        with open(fp, 'rb') as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            f.seek(max(0, size - 4096))
            tail = f.read().decode('utf-8', errors='replace')
    except OSError:
        return None
    for line in reversed(tail.splitlines()):
        try:
            rec = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(rec, dict) and rec.get('type') == 'exit':
            code = (rec.get('data') or {}).get('code')
            return code if isinstance(code, int) else None
    return None


def list_logs(log_dir: Path) -> List[Dict[str, Any]]:
    log_dir = Path(log_dir)
    if not log_dir.is_dir():
        return []
    out: List[Dict[str, Any]] = []
    for fp in log_dir.iterdir():
        m = _NAME_RE.match(fp.name)
        if not m or not fp.is_file():
            continue
        try:
            st = fp.stat()
        except OSError:
            continue
        ts = m.group('ts')
        out.append({
            'filename': fp.name,
            'command': m.group('cmd').replace('.', ':'),
            'timestamp': ts[:10] + ' ' + ts[11:].replace('-', ':'),
            'size': st.st_size,
            'exitCode': _last_exit_code(fp),
            'modifiedAt': datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat(),
        })
    out.sort(key=lambda d: (d['timestamp'], d['modifiedAt']), reverse=True)
    return out


def resolve_log(log_dir: Path, filename: str) -> Optional[Path]:
    if not _NAME_RE.match(filename or ''):
        return None
    fp = Path(log_dir) / filename
    if not fp.is_file():
        return None
    return fp
