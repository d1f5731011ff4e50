import json
import subprocess
from typing import Any, Dict, List, Optional, Tuple

from .launcher import build_argv


class DiscoveryError(Exception):
    def __init__(self, message: str, status: int = 500, stderr: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.stderr = stderr


def parse_command_list(stdout: str, prefix: str, base_argv: List[str]) -> Dict[str, Dict[str, Any]]:
    """Turn ``bin/console list --format=json`` output into allow-list shaped entries.

    ``base_argv`` is the discovery argv minus its ``list ...`` tail, so a
    discovered ``app:foo`` maps to ``[*base_argv, 'app:foo']``.
    """
    parsed = json.loads(stdout)
    out: Dict[str, Dict[str, Any]] = {}
    commands = parsed.get('commands') if isinstance(parsed, dict) else None
    if not isinstance(commands, list):
        return out
    for cmd in commands:
        if not isinstance(cmd, dict):
            continue
        name = cmd.get('name')
        if not isinstance(name, str) or not name.startswith(prefix):
            continue
        cid = name[len(prefix):] if prefix else name
        if not cid:
            continue
        desc = cmd.get('description') or ''
        out[cid] = {
            'name': desc or cid,
            'description': desc,
            'command': list(base_argv) + [name],
        }
    return out


def _base_argv(argv: List[str]) -> List[str]:
    if 'list' in argv:
        return argv[:argv.index('list')]
    return argv[:-1] if len(argv) > 1 else list(argv)


def discover(argv: List[str], target_container: Optional[str], prefix: str, timeout_ms: int) -> Tuple[Dict[str, Dict[str, Any]], int]:
    full = build_argv(argv, target_container)
    try:
        proc = subprocess.Popen(full, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except OSError as e:
        raise DiscoveryError(f'Failed to run discovery: {e}') from e
    try:
        out, err = proc.communicate(timeout=timeout_ms / 1000.0)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.communicate()
        raise DiscoveryError(f'Discovery timed out after {timeout_ms // 1000} seconds', status=504)
    if proc.returncode != 0:
        raise DiscoveryError(f'Command list failed with exit code {proc.returncode}', stderr=err)
    try:
        commands = parse_command_list(out or '', prefix, _base_argv(list(argv)))
    except ValueError as e:
        raise DiscoveryError(f'Failed to parse command list: {e}') from e
    return commands, len(commands)
