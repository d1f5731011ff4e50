import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

LOG = logging.getLogger('command-runner')


class CommandEntry(BaseModel):
    """One allow-listed command. ``command`` is the fixed argv prefix."""

    model_config = ConfigDict(frozen=True, extra='ignore')

    id: StrictStr
    name: Optional[str] = None
    description: str = ''
    command: List[StrictStr] = Field(min_length=1)
    acceptsArgs: bool = False
    argsDescription: Optional[str] = None
    argsPlaceholder: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def summary(self) -> Dict[str, Any]:
        return {
            'name': self.display_name,
            'description': self.description or '',
            'acceptsArgs': self.acceptsArgs,
            'argsDescription': self.argsDescription,
            'argsPlaceholder': self.argsPlaceholder,
        }


@dataclass(frozen=True)
class AllowList:
    """Immutable snapshot of the registry file as of ``mtime``."""

    entries: Mapping[str, CommandEntry] = field(default_factory=lambda: MappingProxyType({}))
    mtime: Optional[float] = None

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, command_id: object) -> bool:
        return command_id in self.entries

    def get(self, command_id: str) -> Optional[CommandEntry]:
        return self.entries.get(command_id)

    def ids(self) -> List[str]:
        return list(self.entries.keys())


def parse_commands(raw: Any) -> Dict[str, CommandEntry]:
    """Build entries from a parsed document, dropping malformed ones."""
    out: Dict[str, CommandEntry] = {}
    commands = raw.get('commands') if isinstance(raw, dict) else None
    if not isinstance(commands, dict):
        return out
    for key, item in commands.items():
        if not isinstance(item, dict):
            LOG.debug('allow-list: dropping %r (not a mapping)', key)
            continue
        try:
            entry = CommandEntry.model_validate({**item, 'id': str(key)})
        except ValidationError as e:
            LOG.debug('allow-list: dropping %r (%d validation errors)', key, e.error_count())
            continue
        out[entry.id] = entry
    return out


class AllowListStore:
    """Owns the current AllowList and rebuilds it when the file changes.

    Readers call ``snapshot()``/``lookup()`` without locking: a reload builds a
    complete new AllowList and swaps the reference in a single assignment.
    """

    def __init__(self, path: Path, service_log=None):
        self.path = Path(path)
        self._service_log = service_log
        self._snapshot = AllowList()
        self._reload_lock = threading.Lock()
        self._last_failure: Optional[str] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def snapshot(self) -> AllowList:
        return self._snapshot

    def lookup(self, command_id: str) -> Optional[CommandEntry]:
        return self._snapshot.get(command_id)

    def ids(self) -> List[str]:
        return self._snapshot.ids()

    def _event(self, event: str, **fields: Any) -> None:
        if self._service_log is not None:
            self._service_log.event(event, **fields)

    def _fail(self, kind: str, message: str) -> None:
        # Warn once per distinct failure; repeated poll misses stay quiet
        if self._last_failure == message:
            return
        self._last_failure = message
        LOG.warning('allow-list %s: %s', kind, message)
        self._event(kind, message=message, path=str(self.path))

    def reload(self) -> bool:
        """Re-read the registry if its mtime changed. Returns True when swapped."""
        with self._reload_lock:
            try:
                mtime = self.path.stat().st_mtime
            except FileNotFoundError:
                self._fail('config_warning', f'Commands file not found: {self.path}')
                return False
            except OSError as e:
                self._fail('config_warning', f'Commands file unreadable: {self.path}: {e}')
                return False
            if self._snapshot.mtime is not None and mtime == self._snapshot.mtime:
                return False
            try:
                raw = yaml.safe_load(self.path.read_text(encoding='utf-8'))
            except (OSError, UnicodeDecodeError) as e:
                self._fail('config_warning', f'Commands file unreadable: {self.path}: {e}')
                return False
            except yaml.YAMLError as e:
                self._fail('config_error', f'Commands file is not valid YAML: {e}')
                return False
            entries = parse_commands(raw)
            self._snapshot = AllowList(entries=MappingProxyType(entries), mtime=mtime)
            self._last_failure = None
            self._event('config_reload', commandCount=len(entries), commands=list(entries.keys()))
            return True

    def start_polling(self, interval_s: float) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()

        def loop():
            while not self._stop.wait(interval_s):
                try:
                    self.reload()
                except Exception:
                    LOG.exception('allow-list reload crashed')

        self._thread = threading.Thread(target=loop, name='allowlist-reload', daemon=True)
        self._thread.start()

    def stop_polling(self) -> None:
        self._stop.set()
        t = self._thread
        if t is not None:
            t.join(timeout=2.0)
        self._thread = None
