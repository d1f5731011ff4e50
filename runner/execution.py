import asyncio
import signal
import time
from typing import AsyncIterator

from .config import RunnerSettings
from .events import PING_FRAME, error_event, exit_event, info_event, line_event, start_event
from .launcher import DRAINED, SpawnError, signal_name, spawn
from .logstore import ExecutionLog, ServiceLog
from .policy import Prepared
from .sessions import SessionRegistry, new_session_id


async def stream_execution(prep: Prepared, settings: RunnerSettings, sessions: SessionRegistry,
                           service_log: ServiceLog) -> AsyncIterator[bytes]:
    """Spawn ``prep.argv`` and yield its SSE frames.

    Frames: one ``start``, then ``stdout``/``stderr`` lines (with keep-alive
    comments while idle), then exactly one ``exit`` or ``error``. Closing the
    generator early kills the process and releases the session.
    """
    xlog = ExecutionLog(settings.log_dir, prep.command_id)
    t0 = time.monotonic()
    sid = new_session_id()
    handle = None
    finished = False

    def emit(ev) -> bytes:
        # On disk before the frame goes out
        xlog.append_event(ev)
        return ev.encode()

    def elapsed_ms() -> int:
        return int((time.monotonic() - t0) * 1000)

    try:
        try:
            handle = spawn(prep.argv, target_container=settings.target_container)
        except SpawnError as e:
            finished = True
            service_log.event('error', commandId=prep.command_id, error=str(e), durationMs=elapsed_ms())
            yield emit(start_event(None, prep.command_id, prep.argv, settings.target_container))
            yield emit(error_event(str(e), elapsed_ms()))
            return

        sessions.register(sid, handle, prep.command_id)
        service_log.event('start', sessionId=sid, commandId=prep.command_id, argv=handle.argv,
                          pid=handle.pid, logPath=str(xlog.path))
        yield emit(start_event(sid, prep.command_id, handle.argv, settings.target_container))

        ping_s = settings.ping_interval_ms / 1000.0

        def next_frame():
            # Runs off the event loop; output lines are logged here too
            item = handle.next_output(ping_s)
            if item is DRAINED or item is None:
                return item
            return emit(line_event(*item))

        while True:
            frame = await asyncio.to_thread(next_frame)
            if frame is DRAINED:
                break
            yield PING_FRAME if frame is None else frame

        code = await asyncio.to_thread(handle.wait)
        # Released before the exit frame so a late /stop already sees "not found"
        sessions.deregister(sid, handle)
        duration = elapsed_ms()
        service_log.event('exit', sessionId=sid, commandId=prep.command_id, exitCode=code,
                          durationMs=duration, logPath=str(xlog.path))
        finished = True
        if handle.killed_with is not None:
            yield emit(info_event(f'Process terminated by {signal.Signals(handle.killed_with).name}'))
        yield emit(exit_event(code, duration, signal_name(code), str(xlog.path)))
    finally:
        if handle is not None:
            if not finished:
                handle.kill()
                xlog.append({'type': 'client_disconnect', 'data': {'sessionId': sid, 'durationMs': elapsed_ms()}})
                service_log.event('client_disconnect', sessionId=sid, commandId=prep.command_id)
            sessions.deregister(sid, handle)
        xlog.close()
