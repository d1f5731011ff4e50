import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


def _env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return int(str(v).strip())
    except Exception:
        return default


def _env_str(name: str, default: str) -> str:
    v = os.environ.get(name)
    if v is None or not str(v).strip():
        return default
    return str(v).strip()


def _env_argv(name: str, default: List[str]) -> List[str]:
    v = os.environ.get(name)
    if not v or not v.strip():
        return list(default)
    # Parsed once at startup into a fixed argv; never handed to a shell
    return shlex.split(v)


DEFAULT_DISCOVER_COMMAND = ['php', 'bin/console', 'list', '--format=json']


@dataclass
class RunnerSettings:
    host: str = '127.0.0.1'
    port: int = 8080
    commands_file: Path = Path('console-commands.yaml')
    log_dir: Path = Path('logs/command-logs')
    service_log: Path = Path('logs/runner.jsonl')
    target_container: Optional[str] = None
    reload_interval_ms: int = 5000
    ping_interval_ms: int = 5000
    discover_command: List[str] = field(default_factory=lambda: list(DEFAULT_DISCOVER_COMMAND))
    discover_prefix: str = ''
    discover_timeout_ms: int = 30000
    token: Optional[str] = None
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'RunnerSettings':
        container = _env_str('RUNNER_TARGET_CONTAINER', '')
        token = _env_str('RUNNER_TOKEN', '')
        return cls(
            host=_env_str('RUNNER_HOST', '127.0.0.1'),
            port=_env_int('RUNNER_PORT', 8080),
            commands_file=Path(_env_str('RUNNER_COMMANDS_FILE', 'console-commands.yaml')),
            log_dir=Path(_env_str('RUNNER_LOG_DIR', 'logs/command-logs')),
            service_log=Path(_env_str('RUNNER_SERVICE_LOG', 'logs/runner.jsonl')),
            target_container=container or None,
            reload_interval_ms=max(100, _env_int('RUNNER_RELOAD_INTERVAL_MS', 5000)),
            ping_interval_ms=max(50, _env_int('RUNNER_PING_INTERVAL_MS', 5000)),
            discover_command=_env_argv('RUNNER_DISCOVER_COMMAND', DEFAULT_DISCOVER_COMMAND),
            discover_prefix=os.environ.get('RUNNER_DISCOVER_PREFIX', '').strip(),
            discover_timeout_ms=_env_int('RUNNER_DISCOVER_TIMEOUT_MS', 30000),
            token=token or None,
            log_level=_env_str('RUNNER_LOG_LEVEL', 'INFO').upper(),
        )


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format='[%(levelname)s] %(message)s')
