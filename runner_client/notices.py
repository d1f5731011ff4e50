"""Human-facing notices injected into the console output.

Kept apart from the hook so the wording (and the detection pattern) can be
swapped per deployment.
"""
from typing import List, Tuple

_RULE = '═' * 59

MUTEX_MARKERS = ('Lock "', 'is already acquired by')


def is_mutex_conflict(line) -> bool:
    if not isinstance(line, str):
        return False
    return all(m in line for m in MUTEX_MARKERS)


def mutex_notice() -> List[Tuple[str, str]]:
    """(text, style) pairs explaining a held command lock."""
    return [
        ('', 'stdout'),
        (_RULE, 'info'),
        ('⚠ COMMAND ALREADY RUNNING', 'error'),
        (_RULE, 'info'),
        ('', 'stdout'),
        ('This command uses a mutex lock to prevent concurrent execution.', 'info'),
        ('The same command is currently running in another process.', 'info'),
        ('', 'stdout'),
        ('Possible causes:', 'info'),
        ('  • The command is still running from a previous execution', 'info'),
        ('  • A previous client disconnected while the command was running', 'info'),
        ('  • The command is running in another terminal/session', 'info'),
        ('', 'stdout'),
        ('Please wait for the other instance to complete, or stop it manually.', 'info'),
        ('', 'stdout'),
        (_RULE, 'info'),
        ('', 'stdout'),
    ]
