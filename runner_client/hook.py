import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Sequence

import requests

from runner.events import ERROR, EXIT, INFO, START, STDERR, STDOUT, FrameParser, StreamEvent

from .notices import is_mutex_conflict, mutex_notice
from .terminal import BufferTerminal

LOG = logging.getLogger('runner-console')

IDLE = 'idle'
CONNECTING = 'connecting'
RUNNING = 'running'
STREAMING = 'streaming'
COMPLETED = 'completed'
FAILED = 'error'
DISCONNECTED = 'disconnected'

ACTIVE_STATES = (CONNECTING, RUNNING, STREAMING)

CONNECT_TIMEOUT_S = 10.0
STOP_TIMEOUT_S = 15.0

# Network failures, or stop() closing the response under the reader
_READ_ERRORS = (requests.RequestException, OSError, ValueError)


@dataclass
class RunResult:
    success: bool = False
    exitCode: Optional[int] = None
    logPath: Optional[str] = None
    sessionId: Optional[str] = None
    durationMs: int = 0
    stopped: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConsoleRunner:
    """Drives one command at a time through the gateway.

    State moves ``idle -> connecting -> running -> streaming`` and ends in
    ``completed``, ``error`` or ``disconnected``; a user stop ends in
    ``idle``. Frames are applied synchronously as they are parsed.
    """

    def __init__(self, gateway_url: str, terminal=None, session: Optional[requests.Session] = None,
                 tick_interval: float = 1.0):
        self.gateway_url = gateway_url.rstrip('/')
        self.terminal = terminal if terminal is not None else BufferTerminal()
        self.http = session or requests.Session()
        self.tick_interval = tick_interval

        self.state = IDLE
        self.session_id: Optional[str] = None
        self.elapsed_ms = 0
        self.last_log_path: Optional[str] = None
        self.execution_error: Optional[str] = None

        self._resp = None
        self._abort = threading.Event()
        self._stop_requested = threading.Event()
        self._tick_stop = threading.Event()
        self._ticker: Optional[threading.Thread] = None
        self._t0 = 0.0
        self._got_output = False
        self._mutex_noticed = False
        self._result = RunResult()

    @property
    def is_running(self) -> bool:
        return self.state in ACTIVE_STATES

    def _write(self, text: str, style: str = 'stdout') -> None:
        self.terminal.writeln(text, style)

    # elapsed time

    def _start_timer(self) -> None:
        self._t0 = time.monotonic()
        self.elapsed_ms = 0
        self._tick_stop.clear()

        def tick():
            while not self._tick_stop.wait(self.tick_interval):
                self.elapsed_ms = int((time.monotonic() - self._t0) * 1000)

        self._ticker = threading.Thread(target=tick, name='runner-console-ticker', daemon=True)
        self._ticker.start()

    def _stop_timer(self) -> None:
        self._tick_stop.set()
        self.elapsed_ms = int((time.monotonic() - self._t0) * 1000)
        if self._ticker is not None and self._ticker is not threading.current_thread():
            self._ticker.join(timeout=1.0)
        self._ticker = None

    # frames

    def _apply(self, ev: StreamEvent) -> None:
        data = ev.data if isinstance(ev.data, dict) else {}
        if ev.type == START:
            self.state = RUNNING
            self.session_id = data.get('sessionId')
            self._result.sessionId = self.session_id
        elif ev.type in (STDOUT, STDERR):
            if not self._got_output:
                self._got_output = True
                self.state = STREAMING
            line = data.get('line', '') if data else str(ev.data or '')
            if not self._mutex_noticed and is_mutex_conflict(line):
                self._mutex_noticed = True
                for text, style in mutex_notice():
                    self._write(text, style)
            self._write(line, ev.type)
        elif ev.type == INFO:
            self._write(data.get('message', '') if data else str(ev.data or ''), 'info')
        elif ev.type == ERROR:
            message = data.get('message') if data else str(ev.data or '')
            self.execution_error = message or 'Command failed'
            self._result.error = self.execution_error
            self._write(self.execution_error, 'error')
            self.state = FAILED
        elif ev.type == EXIT:
            code = data.get('code')
            self._result.exitCode = code
            self._result.success = code == 0
            if data.get('logPath'):
                self.last_log_path = data['logPath']
                self._result.logPath = self.last_log_path
            self._write('')
            if code == 0:
                self._write('✓ Command completed successfully', 'success')
                self.state = COMPLETED
            else:
                suffix = f' ({data["signal"]})' if data.get('signal') else ''
                self._write(f'✗ Command failed with exit code {code}{suffix}', 'error')
                self.state = FAILED
        else:
            LOG.debug('ignoring event type %r', ev.type)

    # control

    def run(self, command_id: str, args: Sequence[str] = (), on_complete: Optional[Callable[[RunResult], None]] = None) -> RunResult:
        if self.is_running:
            self.execution_error = 'A command is already running'
            return RunResult(error=self.execution_error)

        self.state = CONNECTING
        self.session_id = None
        self.execution_error = None
        self.last_log_path = None
        self._abort.clear()
        self._stop_requested.clear()
        self._got_output = False
        self._mutex_noticed = False
        self._result = RunResult()
        self._start_timer()

        self.terminal.clear()
        shown = ' '.join([command_id] + list(args))
        self._write(f'$ {shown}', 'info')
        self._write('')

        terminal_seen = False
        try:
            resp = self.http.post(f'{self.gateway_url}/run', json={'command': command_id, 'args': list(args)},
                                  headers={'Accept': 'text/event-stream'}, stream=True,
                                  timeout=(CONNECT_TIMEOUT_S, None))
            self._resp = resp
            if not resp.ok:
                raise requests.HTTPError(_error_message(resp), response=resp)
            parser = FrameParser()
            for chunk in resp.iter_content(chunk_size=None):
                if self._abort.is_set():
                    break
                for ev in parser.feed(chunk):
                    self._apply(ev)
                    if ev.terminal:
                        terminal_seen = True
                        break
                if terminal_seen:
                    break
            if not terminal_seen and not self._stop_requested.is_set():
                for ev in parser.finish():
                    self._apply(ev)
                    terminal_seen = terminal_seen or ev.terminal
            if not terminal_seen and not self._stop_requested.is_set():
                raise requests.ConnectionError('Stream ended before the command finished')
        except _READ_ERRORS as e:
            if not self._stop_requested.is_set():
                self.execution_error = str(e) or e.__class__.__name__
                self._result.error = self.execution_error
                self._write('')
                self._write(f'Error: {self.execution_error}', 'error')
                self.state = DISCONNECTED
        finally:
            resp, self._resp = self._resp, None
            if resp is not None:
                resp.close()
            self._stop_timer()
            self.session_id = None

        if self._stop_requested.is_set():
            self._write('')
            self._write('Command cancelled by user', 'info')
            self.state = IDLE
            self._result = RunResult(sessionId=self._result.sessionId, stopped=True)

        self._result.durationMs = self.elapsed_ms
        result = self._result
        if on_complete is not None:
            on_complete(result)
        return result

    def stop(self) -> bool:
        """Ask the gateway to kill the remote process, then abort the local
        read whatever the outcome. True when the gateway confirmed the stop.

        The stream stays open during the stop call: closing it first would let
        the runner reap the session on disconnect and answer 404.
        """
        sid = self.session_id
        self._stop_requested.set()
        confirmed = False
        if sid:
            try:
                r = self.http.post(f'{self.gateway_url}/stop', json={'sessionId': sid}, timeout=STOP_TIMEOUT_S)
                confirmed = r.ok and bool(r.json().get('success'))
            except (requests.RequestException, ValueError) as e:
                LOG.warning('stop %s failed: %s', sid, e)
            if confirmed:
                self._write('')
                self._write('Process terminated by user', 'info')
        self._abort.set()
        resp = self._resp
        if resp is not None:
            try:
                resp.close()
            except _READ_ERRORS as e:
                LOG.debug('closing stream: %s', e)
        return confirmed

    def clear(self) -> None:
        self.terminal.clear()
        self.elapsed_ms = 0
        if not self.is_running:
            self.state = IDLE


def _error_message(resp) -> str:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get('error'):
        return str(data['error'])
    return f'Gateway returned status {resp.status_code}'
