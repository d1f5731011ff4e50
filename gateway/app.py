#!/usr/bin/env python3
"""Browser-facing front door for the command runner.

Checks request shape, forwards to the runner and relays its event stream
byte for byte. Health and stop calls carry short timeouts so they answer
even when a command is hung.
"""
import argparse
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

try:
    from fastapi import FastAPI, Request
    from fastapi.responses import JSONResponse, StreamingResponse
    import httpx
    import uvicorn
except Exception:
    print("Missing dependencies: fastapi, uvicorn, httpx")
    print("Create a venv and: pip install -e .")
    raise SystemExit(1)

from runner.config import _env_int, _env_str, configure_logging
from runner.events import SSE_HEADERS, FrameParser, error_event
from runner.policy import check_request_shape

LOG = logging.getLogger('command-gateway')

HEALTH_TIMEOUT_S = 5.0
STOP_TIMEOUT_S = 10.0
COMMANDS_TIMEOUT_S = 5.0
DISCOVER_TIMEOUT_S = 40.0
CONNECT_TIMEOUT_S = 5.0

RUNNER_UNREACHABLE = 'runner_unreachable'
RUNNER_REJECTED = 'runner_rejected'
SESSION_NOT_FOUND = 'session_not_found'


@dataclass
class GatewaySettings:
    host: str = '127.0.0.1'
    port: int = 3000
    runner_url: str = 'http://127.0.0.1:8080'
    token: Optional[str] = None
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'GatewaySettings':
        token = _env_str('RUNNER_TOKEN', '')
        return cls(
            host=_env_str('GATEWAY_HOST', '127.0.0.1'),
            port=_env_int('GATEWAY_PORT', 3000),
            runner_url=_env_str('RUNNER_URL', 'http://127.0.0.1:8080').rstrip('/'),
            token=token or None,
            log_level=_env_str('GATEWAY_LOG_LEVEL', 'INFO').upper(),
        )


def _fail(status_code: int, message: str, **extra: Any) -> JSONResponse:
    body: Dict[str, Any] = {'success': False, 'error': message}
    body.update(extra)
    return JSONResponse(body, status_code=status_code)


def _json_or_empty(resp: 'httpx.Response') -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def create_app(settings: Optional[GatewaySettings] = None,
               transport: Optional['httpx.AsyncBaseTransport'] = None) -> FastAPI:
    settings = settings or GatewaySettings.from_env()
    app = FastAPI(title='command-gateway')
    app.state.settings = settings

    def _client(timeout) -> httpx.AsyncClient:
        headers = {'Authorization': f'Bearer {settings.token}'} if settings.token else None
        return httpx.AsyncClient(base_url=settings.runner_url, timeout=timeout, transport=transport, headers=headers)

    async def _proxy_get(path: str, timeout_s: float, what: str) -> JSONResponse:
        try:
            async with _client(timeout_s) as client:
                resp = await client.get(path)
        except httpx.TimeoutException:
            return _fail(504, f'{what} request timed out', errorKind=RUNNER_UNREACHABLE)
        except httpx.RequestError as e:
            LOG.warning('%s: runner unreachable: %s', path, e)
            return _fail(503, f'Runner unavailable: {e}', errorKind=RUNNER_UNREACHABLE)
        data = _json_or_empty(resp)
        if not resp.is_success:
            data.setdefault('success', False)
            data.setdefault('error', f'Runner returned status {resp.status_code}')
            data.setdefault('errorKind', RUNNER_REJECTED)
        return JSONResponse(data, status_code=resp.status_code)

    @app.get('/health')
    async def health():
        try:
            async with _client(HEALTH_TIMEOUT_S) as client:
                resp = await client.get('/health')
        except httpx.TimeoutException:
            return _fail(503, 'Health check timed out', status='timeout')
        except httpx.RequestError as e:
            return _fail(503, str(e) or 'Runner unreachable', status='offline')
        if not resp.is_success:
            return _fail(503, f'Runner returned status {resp.status_code}', status='offline')
        data = _json_or_empty(resp)
        out: Dict[str, Any] = {'success': True}
        out.update(data)
        out['runnerStatus'] = data.get('status')
        out['status'] = 'online'
        return out

    @app.get('/commands')
    async def commands():
        return await _proxy_get('/commands', COMMANDS_TIMEOUT_S, 'Commands')

    @app.get('/discover')
    async def discover():
        return await _proxy_get('/discover', DISCOVER_TIMEOUT_S, 'Discovery')

    @app.get('/logs')
    async def logs():
        return await _proxy_get('/logs', COMMANDS_TIMEOUT_S, 'Logs')

    @app.post('/run')
    async def run(request: Request):
        # validating
        try:
            body = await request.json()
        except ValueError:
            return _fail(400, 'Invalid JSON body')
        ok, err = check_request_shape(body)
        if not ok:
            return _fail(400, err['message'])

        # forwarding
        client = _client(httpx.Timeout(None, connect=CONNECT_TIMEOUT_S))
        upstream = client.build_request('POST', '/run', json={'command': body['command'], 'args': body.get('args') or []})
        try:
            resp = await client.send(upstream, stream=True)
        except httpx.RequestError as e:
            await client.aclose()
            LOG.warning('run %s: runner unreachable: %s', body['command'], e)
            return _fail(503, f'Failed to connect to runner: {e}', errorKind=RUNNER_UNREACHABLE)

        ctype = resp.headers.get('content-type', '')
        if not resp.is_success or not ctype.startswith('text/event-stream'):
            try:
                await resp.aread()
                data = _json_or_empty(resp)
            finally:
                await resp.aclose()
                await client.aclose()
            status = resp.status_code if not resp.is_success else 502
            extra = {'allowedCommands': data['allowedCommands']} if 'allowedCommands' in data else {}
            return _fail(status, data.get('error') or 'Runner request failed', errorKind=RUNNER_REJECTED, **extra)

        # streaming
        async def relay():
            tail = b''
            parser = FrameParser()
            ended = False
            try:
                async for chunk in resp.aiter_raw():
                    if chunk:
                        tail = chunk[-2:]
                        ended = ended or any(ev.terminal for ev in parser.feed(chunk))
                        yield chunk
            except httpx.HTTPError as e:
                if ended:
                    LOG.debug('run %s: upstream closed after final frame: %s', body['command'], e)
                    return
                LOG.warning('run %s: upstream stream broke: %s', body['command'], e)
                # Close any half-written frame before the error frame
                yield (b'' if tail == b'\n\n' else b'\n\n') + error_event(f'Runner stream interrupted: {e}').encode()
            finally:
                await resp.aclose()
                await client.aclose()

        return StreamingResponse(relay(), media_type='text/event-stream', headers=SSE_HEADERS)

    @app.post('/stop')
    async def stop(request: Request):
        try:
            body = await request.json()
        except ValueError:
            return _fail(400, 'Invalid JSON body')
        sid = body.get('sessionId') if isinstance(body, dict) else None
        if not sid or not isinstance(sid, str):
            return _fail(400, 'sessionId is required')
        try:
            async with _client(STOP_TIMEOUT_S) as client:
                resp = await client.post('/stop', json={'sessionId': sid})
        except httpx.TimeoutException:
            return _fail(504, 'Stop request timed out', errorKind=RUNNER_UNREACHABLE)
        except httpx.RequestError as e:
            return _fail(503, f'Failed to connect to runner: {e}', errorKind=RUNNER_UNREACHABLE)
        data = _json_or_empty(resp)
        if resp.status_code == 404:
            data.setdefault('success', False)
            data['errorKind'] = SESSION_NOT_FOUND
        elif not resp.is_success:
            data.setdefault('success', False)
            data.setdefault('error', f'Runner returned status {resp.status_code}')
            data.setdefault('errorKind', RUNNER_REJECTED)
        return JSONResponse(data, status_code=resp.status_code)

    return app


def main():
    settings = GatewaySettings.from_env()
    p = argparse.ArgumentParser(description='command-gateway')
    p.add_argument('--host', default=settings.host)
    p.add_argument('--port', type=int, default=settings.port)
    p.add_argument('--runner-url', default=settings.runner_url)
    args = p.parse_args()
    settings.host, settings.port, settings.runner_url = args.host, args.port, args.runner_url.rstrip('/')
    configure_logging(settings.log_level)
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == '__main__':
    main()
