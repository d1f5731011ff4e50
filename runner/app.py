#!/usr/bin/env python3
import argparse
import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

try:
    from fastapi import FastAPI, Request
    from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
    import uvicorn
except Exception:
    print("Missing dependencies: fastapi, uvicorn")
    print("Create a venv and: pip install -e .")
    raise SystemExit(1)

from .allowlist import AllowListStore
from .config import RunnerSettings, configure_logging
from .discover import DiscoveryError, discover
from .events import SSE_HEADERS
from .execution import stream_execution
from .logstore import ServiceLog, list_logs, resolve_log
from .policy import auth_ok, error_status, validate_and_prepare
from .sessions import SessionRegistry


def _fail(status: int, message: str, **extra: Any) -> JSONResponse:
    body: Dict[str, Any] = {'success': False, 'error': message}
    body.update(extra)
    return JSONResponse(body, status_code=status)


def create_app(settings: Optional[RunnerSettings] = None) -> FastAPI:
    settings = settings or RunnerSettings.from_env()
    service_log = ServiceLog(settings.service_log)
    store = AllowListStore(settings.commands_file, service_log=service_log)
    sessions = SessionRegistry()
    started_at = time.time()

    # Load once up front so the registry is usable before the poller's first tick
    store.reload()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.start_polling(settings.reload_interval_ms / 1000.0)
        service_log.event('server_start', port=settings.port, targetContainer=settings.target_container,
                          commandsFile=str(settings.commands_file))
        try:
            yield
        finally:
            store.stop_polling()
            for sess in sessions.sessions():
                sessions.stop(sess.id)
            service_log.event('server_stop', reason='shutdown')

    app = FastAPI(title='command-runner', lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.sessions = sessions
    app.state.service_log = service_log

    @app.get('/health')
    def health():
        return {
            'status': 'ok',
            'commandCount': len(store.snapshot()),
            'uptime': round(time.time() - started_at, 3),
            'targetContainer': settings.target_container,
            'activeSessions': sessions.active_count(),
        }

    @app.get('/commands')
    def commands(request: Request):
        if not auth_ok(request, settings.token):
            return _fail(401, 'unauthorized')
        snap = store.snapshot()
        return {'success': True, 'commands': {cid: e.summary() for cid, e in snap.entries.items()}}

    @app.post('/run')
    async def run(request: Request):
        if not auth_ok(request, settings.token):
            return _fail(401, 'unauthorized')
        try:
            body = await request.json()
        except ValueError:
            return _fail(400, 'Invalid JSON body', code='E_BAD_ARG')
        ok, err, prep = validate_and_prepare(body, store.snapshot())
        if not ok:
            extra = {k: v for k, v in err.items() if k not in ('message',)}
            service_log.event('rejected', command=body.get('command') if isinstance(body, dict) else None,
                              code=err.get('code'), reason=err.get('message'))
            return _fail(error_status(err), err['message'], **extra)
        return StreamingResponse(stream_execution(prep, settings, sessions, service_log), media_type='text/event-stream', headers=SSE_HEADERS)

    @app.post('/stop')
    async def stop(request: Request):
        if not auth_ok(request, settings.token):
            return _fail(401, 'unauthorized')
        try:
            body = await request.json()
        except ValueError:
            return _fail(400, 'Invalid JSON body')
        sid = body.get('sessionId') if isinstance(body, dict) else None
        if not sid or not isinstance(sid, str):
            return _fail(400, 'sessionId is required')
        res = sessions.stop(sid)
        if not res.found:
            return _fail(404, 'Session not found or already finished', sessionId=sid)
        service_log.event('stop', sessionId=sid, commandId=res.session.commandId, signalled=res.signalled)
        return {'success': True, 'sessionId': sid, 'signal': 'SIGTERM', 'signalled': res.signalled}

    @app.get('/discover')
    async def discover_commands(request: Request):
        if not auth_ok(request, settings.token):
            return _fail(401, 'unauthorized')
        service_log.event('discover_start', targetContainer=settings.target_container)
        try:
            found, count = await asyncio.to_thread(
                discover, settings.discover_command, settings.target_container,
                settings.discover_prefix, settings.discover_timeout_ms)
        except DiscoveryError as e:
            service_log.event('discover_error', error=str(e), status=e.status)
            extra = {'stderr': e.stderr} if e.stderr else {}
            return _fail(e.status, str(e), **extra)
        service_log.event('discover_complete', commandCount=count)
        return {'success': True, 'commands': found, 'discoveredCount': count}

    @app.get('/logs')
    def logs(request: Request):
        if not auth_ok(request, settings.token):
            return _fail(401, 'unauthorized')
        items = list_logs(settings.log_dir)
        return {'success': True, 'logs': items, 'totalCount': len(items), 'totalSize': sum(i['size'] for i in items)}

    @app.get('/logs/{filename}')
    def log_file(filename: str, request: Request):
        if not auth_ok(request, settings.token):
            return _fail(401, 'unauthorized')
        fp = resolve_log(settings.log_dir, filename)
        if fp is None:
            return _fail(404, 'Log file not found')
        return FileResponse(str(fp), media_type='application/x-ndjson', filename=filename)

    return app


def main():
    settings = RunnerSettings.from_env()
    p = argparse.ArgumentParser(description='command-runner')
    p.add_argument('--host', default=settings.host)
    p.add_argument('--port', type=int, default=settings.port)
    args = p.parse_args()
    settings.host, settings.port = args.host, args.port
    configure_logging(settings.log_level)
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == '__main__':
    main()
