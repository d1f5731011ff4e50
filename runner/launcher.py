import logging
import os
import queue
import signal
import subprocess
import threading
import time
from typing import IO, Dict, Iterator, List, Optional, Sequence, Tuple

LOG = logging.getLogger('command-runner')

STDOUT = 'stdout'
STDERR = 'stderr'

_EOF = object()
DRAINED = object()


class SpawnError(Exception):
    """The executable could not be started."""


def build_argv(argv: Sequence[str], target_container: Optional[str] = None) -> List[str]:
    if not argv:
        raise ValueError('argv must not be empty')
    argv = [str(a) for a in argv]
    if target_container:
        return ['docker', 'exec', target_container] + argv
    return argv


def split_lines(chunks, encoding: str = 'utf-8') -> Iterator[str]:
    """Yield complete lines from byte chunks; a partial line is held until
    its newline arrives or the chunks run out."""
    buf = b''
    for chunk in chunks:
        if not chunk:
            continue
        buf += chunk
        while True:
            idx = buf.find(b'\n')
            if idx < 0:
                break
            raw, buf = buf[:idx], buf[idx + 1:]
            if raw.endswith(b'\r'):
                raw = raw[:-1]
            yield raw.decode(encoding, errors='replace')
    if buf:
        if buf.endswith(b'\r'):
            buf = buf[:-1]
        yield buf.decode(encoding, errors='replace')


def _read_chunks(pipe: IO[bytes], size: int = 65536) -> Iterator[bytes]:
    # read1 returns as soon as any bytes are available
    reader = getattr(pipe, 'read1', pipe.read)
    while True:
        try:
            chunk = reader(size)
        except (OSError, ValueError):
            return
        if not chunk:
            return
        yield chunk


class ProcessHandle:
    """A spawned process plus a merged, ordered view of its output lines.

    One reader thread per pipe pushes ``(stream, line)`` items into a queue;
    consumers pull them with ``next_output`` or iterate ``output()``.
    """

    def __init__(self, proc: subprocess.Popen, argv: List[str]):
        self.proc = proc
        self.argv = argv
        self.pid = proc.pid
        self.started_at = time.time()
        self._queue: 'queue.Queue' = queue.Queue()
        self._open_streams = 0
        self._kill_lock = threading.Lock()
        self.killed_with: Optional[int] = None
        self._readers: List[threading.Thread] = []
        for name, pipe in ((STDOUT, proc.stdout), (STDERR, proc.stderr)):
            if pipe is None:
                continue
            self._open_streams += 1
            t = threading.Thread(target=self._pump, args=(name, pipe), name=f'pump-{name}-{proc.pid}', daemon=True)
            self._readers.append(t)
            t.start()

    def _pump(self, name: str, pipe: IO[bytes]) -> None:
        try:
            for line in split_lines(_read_chunks(pipe)):
                self._queue.put((name, line))
        finally:
            try:
                pipe.close()
            except OSError:
                pass
            self._queue.put((name, _EOF))

    def next_output(self, timeout: Optional[float] = None):
        """Next ``(stream, line)``, None on timeout, or DRAINED once both
        pipes have reached EOF and every line has been handed out."""
        while True:
            if self._open_streams == 0 and self._queue.empty():
                return DRAINED
            try:
                name, item = self._queue.get(timeout=timeout)
            except queue.Empty:
                return None
            if item is _EOF:
                self._open_streams -= 1
                continue
            return name, item

    def output(self) -> Iterator[Tuple[str, str]]:
        while True:
            item = self.next_output()
            if item is DRAINED:
                return
            if item is not None:
                yield item

    def poll(self) -> Optional[int]:
        return self.proc.poll()

    def wait(self, timeout: Optional[float] = None) -> int:
        return self.proc.wait(timeout=timeout)

    def kill(self, sig: int = signal.SIGTERM) -> bool:
        """Send ``sig`` to the process group. No-op (False) once exited."""
        with self._kill_lock:
            if self.proc.poll() is not None:
                return False
            try:
                os.killpg(self.proc.pid, sig)
            except ProcessLookupError:
                return False
            except PermissionError:
                try:
                    self.proc.send_signal(sig)
                except ProcessLookupError:
                    return False
            self.killed_with = sig
            return True


def spawn(argv: Sequence[str], target_container: Optional[str] = None,
          cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> ProcessHandle:
    full = build_argv(argv, target_container)
    try:
        proc = subprocess.Popen(
            full,
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            shell=False,
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
        raise SpawnError(f'{full[0]}: {e.strerror or e}') from e
    except OSError as e:
        raise SpawnError(str(e)) from e
    LOG.debug('spawned pid=%s argv=%s', proc.pid, full)
    return ProcessHandle(proc, full)


def signal_name(code: Optional[int]) -> Optional[str]:
    if code is None or code >= 0:
        return None
    try:
        return signal.Signals(-code).name
    except ValueError:
        return None
