import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .allowlist import AllowList, CommandEntry

COMMAND_ID_RE = re.compile(r'^[A-Za-z0-9_:-]+$')
DANGEROUS_ARG_RE = re.compile(r'[;&|`$(){}\[\]<>\\\'"]')
MAX_ARGS = 10
MAX_ARG_LEN = 100


def auth_ok(request, token: Optional[str]) -> bool:
    if not token:
        return True
    hdr = request.headers.get('Authorization')
    if not hdr or not hdr.startswith('Bearer '):
        return False
    return hdr.split(' ', 1)[1].strip() == token.strip()


def is_valid_command_id(command: Any) -> bool:
    return isinstance(command, str) and bool(COMMAND_ID_RE.match(command))


def check_request_shape(body: Any) -> Tuple[bool, Optional[Dict[str, str]]]:
    """Format checks shared by the runner and the gateway."""
    if not isinstance(body, dict):
        return False, {'code': 'E_BAD_ARG', 'message': 'Request body must be a JSON object'}
    command = body.get('command')
    if not command:
        return False, {'code': 'E_BAD_ARG', 'message': 'Missing command field'}
    args = body.get('args', [])
    if args is None:
        args = []
    if not isinstance(args, list):
        return False, {'code': 'E_BAD_ARG', 'message': 'Arguments must be an array'}
    if not is_valid_command_id(command):
        return False, {'code': 'E_BAD_ARG', 'message': 'Invalid command format. Only alphanumeric characters, hyphens, underscores, and colons are allowed.'}
    return True, None


def validate_args(args: List[Any]) -> Tuple[bool, Optional[Dict[str, str]]]:
    if len(args) > MAX_ARGS:
        return False, {'code': 'E_BAD_ARG', 'message': f'Too many arguments (max {MAX_ARGS})'}
    for a in args:
        if not isinstance(a, str):
            return False, {'code': 'E_BAD_ARG', 'message': 'All arguments must be strings'}
        if len(a) > MAX_ARG_LEN:
            return False, {'code': 'E_BAD_ARG', 'message': f'Argument too long (max {MAX_ARG_LEN} characters)'}
        if DANGEROUS_ARG_RE.search(a):
            return False, {'code': 'E_BAD_ARG', 'message': 'Arguments contain invalid characters'}
        if a.startswith('-'):
            return False, {'code': 'E_BAD_ARG', 'message': 'Flags are not allowed in arguments'}
        if not a.strip():
            return False, {'code': 'E_BAD_ARG', 'message': 'Empty arguments are not allowed'}
    return True, None


@dataclass
class Prepared:
    command_id: str
    entry: CommandEntry
    args: List[str]
    argv: List[str]


def validate_and_prepare(body: Any, allowlist: AllowList) -> Tuple[bool, Optional[Dict[str, Any]], Optional[Prepared]]:
    ok, err = check_request_shape(body)
    if not ok:
        return False, err, None
    command_id = body['command']
    args = list(body.get('args') or [])

    entry = allowlist.get(command_id)
    if entry is None:
        return False, {
            'code': 'E_FORBIDDEN',
            'message': f'Command "{command_id}" is not in the allowed list',
            'allowedCommands': allowlist.ids(),
        }, None

    if args and not entry.acceptsArgs:
        return False, {'code': 'E_BAD_ARG', 'message': f'Command "{command_id}" does not accept arguments'}, None
    if entry.acceptsArgs and not args:
        return False, {'code': 'E_BAD_ARG', 'message': f'Command "{command_id}" requires arguments: {entry.argsDescription or "arguments required"}'}, None
    if args:
        ok, err = validate_args(args)
        if not ok:
            return False, err, None

    # Fixed argv prefix from the allow-list, user args appended as separate items
    argv = list(entry.command) + args
    return True, None, Prepared(command_id=command_id, entry=entry, args=args, argv=argv)


def error_status(err: Dict[str, Any]) -> int:
    return 403 if err.get('code') == 'E_FORBIDDEN' else 400
