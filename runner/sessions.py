import signal
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional


class SessionExistsError(Exception):
    pass


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Session:
    id: str
    handle: object
    commandId: str
    startedAt: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, object]:
        return {
            'sessionId': self.id,
            'commandId': self.commandId,
            'pid': getattr(self.handle, 'pid', None),
            'startedAt': self.startedAt,
        }


@dataclass
class StopResult:
    found: bool
    signalled: bool = False
    session: Optional[Session] = None


class SessionRegistry:
    """Session id -> live process handle, shared by the run and stop flows.

    Every operation holds one lock, so a stop racing a natural exit either
    finds the entry (and signals it once) or finds nothing.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def register(self, session_id: str, handle: object, command_id: str) -> Session:
        with self._lock:
            if session_id in self._sessions:
                raise SessionExistsError(session_id)
            sess = Session(id=session_id, handle=handle, commandId=command_id)
            self._sessions[session_id] = sess
            return sess

    def lookup(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def deregister(self, session_id: str, handle: Optional[object] = None) -> bool:
        with self._lock:
            sess = self._sessions.get(session_id)
            if sess is None:
                return False
            if handle is not None and sess.handle is not handle:
                return False
            del self._sessions[session_id]
            return True

    def stop(self, session_id: str, sig: int = signal.SIGTERM) -> StopResult:
        with self._lock:
            sess = self._sessions.pop(session_id, None)
            if sess is None:
                return StopResult(found=False)
            signalled = bool(sess.handle.kill(sig))
            return StopResult(found=True, signalled=signalled, session=sess)

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def sessions(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())
