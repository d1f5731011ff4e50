import json
import os
import stat
import sys
import threading
import time
from pathlib import Path

import pytest


def require_fastapi():
    try:
        import fastapi  # noqa: F401
        from fastapi.testclient import TestClient  # noqa: F401
    except Exception as e:
        pytest.skip(f"fastapi not available: {e}")


def _make_script(tmp_path: Path, lines: str, name: str = 'script.py') -> Path:
    p = tmp_path / name
    p.write_text("#!/usr/bin/env python3\n" + lines, encoding='utf-8')
    mode = p.stat().st_mode
    p.chmod(mode | stat.S_IXUSR)
    return p


def _root_on_path():
    root = Path(__file__).resolve().parents[1]
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))
    return root


def _events(raw: bytes):
    from runner.events import FrameParser
    p = FrameParser()
    evs = p.feed(raw)
    evs.extend(p.finish())
    return evs


def _settings(tmp_path: Path, commands: dict, **kw):
    from runner.config import RunnerSettings
    fp = tmp_path / 'console-commands.yaml'
    fp.write_text(json.dumps({'commands': commands}), encoding='utf-8')
    return RunnerSettings(
        commands_file=fp,
        log_dir=tmp_path / 'logs',
        service_log=tmp_path / 'runner.jsonl',
        ping_interval_ms=kw.pop('ping_interval_ms', 1000),
        **kw,
    )


def _fake_php(tmp_path: Path, monkeypatch, body: str) -> Path:
    bindir = tmp_path / 'bin'
    bindir.mkdir(exist_ok=True)
    php = _make_script(bindir, body, name='php')
    monkeypatch.setenv('PATH', str(bindir) + os.pathsep + os.environ.get('PATH', ''))
    return php


def test_build_files_scenario(tmp_path: Path, monkeypatch):
    require_fastapi()
    from fastapi.testclient import TestClient
    _root_on_path()
    from runner.app import create_app

    _fake_php(tmp_path, monkeypatch, "import sys\nassert sys.argv[1:] == ['bin/console', 'app:strava:build-files']\nprint('OK')\n")
    settings = _settings(tmp_path, {'build-files': {'command': ['php', 'bin/console', 'app:strava:build-files']}})
    app = create_app(settings)
    client = TestClient(app)

    r = client.post('/run', json={'command': 'build-files', 'args': []})
    assert r.status_code == 200
    assert r.headers['content-type'].startswith('text/event-stream')
    assert r.headers['cache-control'] == 'no-cache'
    assert r.headers['x-accel-buffering'] == 'no'

    evs = _events(r.content)
    assert [e.type for e in evs] == ['start', 'stdout', 'exit']
    assert evs[0].data['command'] == 'build-files'
    assert evs[0].data['argv'] == ['php', 'bin/console', 'app:strava:build-files']
    assert len(evs[0].data['sessionId']) == 32
    assert evs[1].data == {'line': 'OK'}
    assert evs[2].data['code'] == 0
    assert evs[2].data['durationMs'] >= 0

    # log file holds the same events in order, and the session is gone
    log_path = Path(evs[2].data['logPath'])
    recs = [json.loads(l) for l in log_path.read_text(encoding='utf-8').splitlines()]
    assert [rec['type'] for rec in recs] == ['start', 'stdout', 'exit']
    assert app.state.sessions.active_count() == 0

    svc = [json.loads(l)['event'] for l in (tmp_path / 'runner.jsonl').read_text(encoding='utf-8').splitlines()]
    assert 'start' in svc and 'exit' in svc


def test_forbidden_and_invalid_commands(tmp_path: Path):
    require_fastapi()
    from fastapi.testclient import TestClient
    _root_on_path()
    from runner.app import create_app

    settings = _settings(tmp_path, {'build-files': {'command': ['php', 'bin/console', 'app:build-files']}})
    app = create_app(settings)
    client = TestClient(app)

    r = client.post('/run', json={'command': 'cache:clear'})
    assert r.status_code == 403
    body = r.json()
    assert body['success'] is False
    assert body['allowedCommands'] == ['build-files']

    r = client.post('/run', json={'command': 'rm -rf /'})
    assert r.status_code == 400
    assert 'Invalid command format' in r.json()['error']

    r = client.post('/run', content=b'{not json', headers={'content-type': 'application/json'})
    assert r.status_code == 400

    r = client.post('/run', json={'command': 'build-files', 'args': 'x'})
    assert r.status_code == 400

    r = client.post('/run', json={'command': 'build-files', 'args': ['extra']})
    assert r.status_code == 400

    # nothing was spawned or logged
    assert app.state.sessions.active_count() == 0
    assert not (tmp_path / 'logs').exists()


def test_spawn_failure_yields_start_then_error(tmp_path: Path):
    require_fastapi()
    from fastapi.testclient import TestClient
    _root_on_path()
    from runner.app import create_app

    settings = _settings(tmp_path, {'ghost': {'command': [str(tmp_path / 'no-such-binary')]}})
    client = TestClient(create_app(settings))
    r = client.post('/run', json={'command': 'ghost'})
    assert r.status_code == 200
    evs = _events(r.content)
    assert [e.type for e in evs] == ['start', 'error']
    assert evs[0].data['sessionId'] is None
    assert 'no-such-binary' in evs[1].data['message']


def test_nonzero_exit_and_stderr(tmp_path: Path):
    require_fastapi()
    from fastapi.testclient import TestClient
    root = _root_on_path()
    from runner.app import create_app

    probe = root / 'scripts' / 'probe.py'
    settings = _settings(tmp_path, {'probe': {
        'command': [sys.executable, str(probe), '--repeat', '2', '--stderr-lines', '1', '--sleep-ms', '0', '--exit-code', '3'],
    }})
    client = TestClient(create_app(settings))
    evs = _events(client.post('/run', json={'command': 'probe'}).content)
    types = [e.type for e in evs]
    # stdout/stderr interleaving across pipes is not guaranteed
    assert types[0] == 'start' and types[-1] == 'exit'
    assert types.count('stdout') == 2 and types.count('stderr') == 1
    assert evs[-1].data['code'] == 3
    assert 'signal' not in evs[-1].data


def test_args_are_passed_as_separate_argv_items(tmp_path: Path):
    require_fastapi()
    from fastapi.testclient import TestClient
    root = _root_on_path()
    from runner.app import create_app

    probe = root / 'scripts' / 'probe.py'
    settings = _settings(tmp_path, {'probe': {
        'command': [sys.executable, str(probe), '--repeat', '0', '--stderr-lines', '0', '--sleep-ms', '0'],
        'acceptsArgs': True,
        'argsDescription': 'words to echo',
    }})
    client = TestClient(create_app(settings))
    evs = _events(client.post('/run', json={'command': 'probe', 'args': ['one two', 'three']}).content)
    lines = [e.data['line'] for e in evs if e.type == 'stdout']
    assert lines == ['probe: arg one two', 'probe: arg three']

    r = client.post('/run', json={'command': 'probe', 'args': []})
    assert r.status_code == 400
    assert 'words to echo' in r.json()['error']


def test_ping_frames_while_idle(tmp_path: Path):
    require_fastapi()
    from fastapi.testclient import TestClient
    _root_on_path()
    from runner.app import create_app

    script = _make_script(tmp_path, "import time\ntime.sleep(0.5)\nprint('done', flush=True)\n")
    settings = _settings(tmp_path, {'slow': {'command': [str(script)]}}, ping_interval_ms=50)
    client = TestClient(create_app(settings))
    r = client.post('/run', json={'command': 'slow'})
    assert b': ping\n\n' in r.content
    assert [e.type for e in _events(r.content)] == ['start', 'stdout', 'exit']


def test_stop_running_command(tmp_path: Path):
    require_fastapi()
    from fastapi.testclient import TestClient
    root = _root_on_path()
    from runner.app import create_app

    probe = root / 'scripts' / 'probe.py'
    settings = _settings(tmp_path, {'loop': {
        'command': [sys.executable, str(probe), '--hang', '--repeat', '0', '--stderr-lines', '0', '--sleep-ms', '50'],
    }}, ping_interval_ms=100)
    app = create_app(settings)
    box = {}

    def run():
        box['resp'] = TestClient(app).post('/run', json={'command': 'loop'})
        box['done'] = time.time()

    t = threading.Thread(target=run, daemon=True)
    t.start()

    sid = None
    deadline = time.time() + 10
    while time.time() < deadline and sid is None:
        live = app.state.sessions.sessions()
        if live:
            sid = live[0].id
        else:
            time.sleep(0.02)
    assert sid is not None
    time.sleep(0.2)

    client = TestClient(app)
    stopped_at = time.time()
    r = client.post('/stop', json={'sessionId': sid})
    assert r.status_code == 200
    assert r.json() == {'success': True, 'sessionId': sid, 'signal': 'SIGTERM', 'signalled': True}

    t.join(timeout=5)
    assert not t.is_alive()
    assert box['done'] - stopped_at < 2.0

    evs = _events(box['resp'].content)
    assert evs[0].type == 'start' and evs[0].data['sessionId'] == sid
    assert any(e.type == 'stdout' for e in evs)
    assert evs[-1].type == 'exit'
    assert evs[-1].data['code'] < 0
    assert evs[-1].data['signal'] == 'SIGTERM'
    assert evs[-2].type == 'info'
    assert evs[-2].data['message'] == 'Process terminated by SIGTERM'
    assert sum(1 for e in evs if e.terminal) == 1

    # second and third stop on the same id are both "not found"
    for _ in range(2):
        r = client.post('/stop', json={'sessionId': sid})
        assert r.status_code == 404
        assert r.json()['success'] is False


def test_stop_validation(tmp_path: Path):
    require_fastapi()
    from fastapi.testclient import TestClient
    _root_on_path()
    from runner.app import create_app

    client = TestClient(create_app(_settings(tmp_path, {})))
    assert client.post('/stop', json={}).status_code == 400
    assert client.post('/stop', json={'sessionId': 5}).status_code == 400
    assert client.post('/stop', json={'sessionId': 'nope'}).status_code == 404


def test_client_disconnect_kills_process(tmp_path: Path):
    import asyncio
    root = _root_on_path()
    from runner.execution import stream_execution
    from runner.logstore import ServiceLog
    from runner.policy import validate_and_prepare
    from runner.sessions import SessionRegistry

    probe = root / 'scripts' / 'probe.py'
    settings = _settings(tmp_path, {'loop': {
        'command': [sys.executable, str(probe), '--hang', '--repeat', '0', '--stderr-lines', '0', '--sleep-ms', '50'],
    }}, ping_interval_ms=100)
    from runner.allowlist import AllowListStore
    store = AllowListStore(settings.commands_file)
    store.reload()
    ok, _, prep = validate_and_prepare({'command': 'loop'}, store.snapshot())
    assert ok
    sessions = SessionRegistry()
    svc = ServiceLog(settings.service_log)
    box = {}

    async def go():
        agen = stream_execution(prep, settings, sessions, svc)
        first = await agen.__anext__()
        assert b'"start"' in first
        while True:
            frame = await agen.__anext__()
            if b'"stdout"' in frame:
                break
        box['handle'] = sessions.sessions()[0].handle
        await agen.aclose()

    asyncio.run(go())

    assert sessions.active_count() == 0
    code = box['handle'].wait(timeout=2)
    assert code < 0

    log_file = next((tmp_path / 'logs').iterdir())
    types = [json.loads(l)['type'] for l in log_file.read_text(encoding='utf-8').splitlines()]
    assert types[0] == 'start'
    assert types[-1] == 'client_disconnect'
    assert 'exit' not in types


def test_health_commands_and_auth(tmp_path: Path):
    require_fastapi()
    from fastapi.testclient import TestClient
    _root_on_path()
    from runner.app import create_app

    settings = _settings(tmp_path, {
        'build-files': {'name': 'Build files', 'command': ['php', 'bin/console', 'app:build-files']},
        'broken': {'command': []},
    }, token='s3cret', target_container='app')
    client = TestClient(create_app(settings))

    h = client.get('/health').json()
    assert h['status'] == 'ok'
    assert h['commandCount'] == 1
    assert h['targetContainer'] == 'app'
    assert h['activeSessions'] == 0

    assert client.get('/commands').status_code == 401
    assert client.post('/run', json={'command': 'build-files'}).status_code == 401
    r = client.get('/commands', headers={'Authorization': 'Bearer s3cret'})
    assert r.status_code == 200
    assert r.json()['commands']['build-files']['name'] == 'Build files'
    assert 'command' not in r.json()['commands']['build-files']


def test_logs_endpoints(tmp_path: Path, monkeypatch):
    require_fastapi()
    from fastapi.testclient import TestClient
    _root_on_path()
    from runner.app import create_app

    _fake_php(tmp_path, monkeypatch, "print('OK')\n")
    settings = _settings(tmp_path, {'build-files': {'command': ['php', 'bin/console', 'app:build-files']}})
    client = TestClient(create_app(settings))
    client.post('/run', json={'command': 'build-files'})

    body = client.get('/logs').json()
    assert body['success'] is True
    assert body['totalCount'] == 1
    entry = body['logs'][0]
    assert entry['command'] == 'build-files'
    assert entry['exitCode'] == 0
    assert body['totalSize'] == entry['size']

    r = client.get(f"/logs/{entry['filename']}")
    assert r.status_code == 200
    assert r.headers['content-type'].startswith('application/x-ndjson')
    assert '"OK"' in r.text

    assert client.get('/logs/2020-01-01T00-00-00_x_abcdef.jsonl').status_code == 404
    assert client.get('/logs/..%2Frunner.jsonl').status_code == 404


def test_discover(tmp_path: Path):
    require_fastapi()
    from fastapi.testclient import TestClient
    _root_on_path()
    from runner.app import create_app

    listing = {'commands': [
        {'name': 'list', 'description': 'List commands'},
        {'name': 'app:build-files', 'description': 'Build files'},
        {'name': 'app:import-data', 'description': ''},
    ]}
    console = _make_script(tmp_path, f"import json\nprint(json.dumps({listing!r}))\n", name='console')
    settings = _settings(tmp_path, {}, discover_command=[str(console), 'list', '--format=json'], discover_prefix='app:')
    client = TestClient(create_app(settings))

    body = client.get('/discover').json()
    assert body['success'] is True
    assert body['discoveredCount'] == 2
    assert body['commands']['build-files'] == {
        'name': 'Build files', 'description': 'Build files', 'command': [str(console), 'app:build-files'],
    }
    assert body['commands']['import-data']['name'] == 'import-data'


def test_discover_failures(tmp_path: Path):
    require_fastapi()
    from fastapi.testclient import TestClient
    _root_on_path()
    from runner.app import create_app

    failing = _make_script(tmp_path, "import sys\nprint('boom', file=sys.stderr)\nsys.exit(1)\n", name='failing')
    client = TestClient(create_app(_settings(tmp_path, {}, discover_command=[str(failing), 'list'])))
    r = client.get('/discover')
    assert r.status_code == 500
    assert 'boom' in r.json()['stderr']

    garbage = _make_script(tmp_path, "print('not json')\n", name='garbage')
    client = TestClient(create_app(_settings(tmp_path, {}, discover_command=[str(garbage), 'list'])))
    assert client.get('/discover').status_code == 500

    slow = _make_script(tmp_path, "import time\ntime.sleep(5)\n", name='slow')
    client = TestClient(create_app(_settings(tmp_path, {}, discover_command=[str(slow), 'list'], discover_timeout_ms=300)))
    t0 = time.time()
    r = client.get('/discover')
    assert r.status_code == 504
    assert time.time() - t0 < 4


def test_lifespan_polls_allowlist(tmp_path: Path):
    require_fastapi()
    from fastapi.testclient import TestClient
    _root_on_path()
    from runner.app import create_app

    settings = _settings(tmp_path, {'a': {'command': ['true']}}, reload_interval_ms=50)
    app = create_app(settings)
    with TestClient(app) as client:
        assert client.get('/health').json()['commandCount'] == 1
        fp = settings.commands_file
        fp.write_text(json.dumps({'commands': {'a': {'command': ['true']}, 'b': {'command': ['true']}}}), encoding='utf-8')
        st = fp.stat()
        os.utime(fp, (st.st_atime + 5, st.st_mtime + 5))
        deadline = time.time() + 3
        count = 1
        while time.time() < deadline and count != 2:
            time.sleep(0.05)
            count = client.get('/health').json()['commandCount']
        assert count == 2

    events = [json.loads(l)['event'] for l in (tmp_path / 'runner.jsonl').read_text(encoding='utf-8').splitlines()]
    assert events[0] == 'config_reload'
    assert 'server_start' in events
    assert events[-1] == 'server_stop'
