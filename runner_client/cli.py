#!/usr/bin/env python3
import argparse
import os
import signal
import sys
import threading

from runner.config import configure_logging

from .hook import ConsoleRunner
from .terminal import AnsiTerminal


def exit_status(result) -> int:
    if result.stopped:
        return 130
    code = result.exitCode
    if code is None:
        return 1
    if code < 0:
        return 128 + (-code)
    return code


def main(argv=None) -> int:
    p = argparse.ArgumentParser(prog='runner-console', description='Run an allow-listed command through the gateway')
    p.add_argument('--gateway', default=os.environ.get('GATEWAY_URL', 'http://127.0.0.1:3000'))
    p.add_argument('--no-color', action='store_true')
    p.add_argument('command')
    p.add_argument('args', nargs='*')
    args = p.parse_args(argv)
    configure_logging(os.environ.get('RUNNER_CONSOLE_LOG_LEVEL', 'WARNING'))

    runner = ConsoleRunner(args.gateway, terminal=AnsiTerminal(color=False if args.no_color else None))
    box = {}

    def work():
        box['result'] = runner.run(args.command, args.args)

    t = threading.Thread(target=work, name='runner-console', daemon=True)
    t.start()
    prev = signal.signal(signal.SIGINT, lambda *_: threading.Thread(target=runner.stop, daemon=True).start())
    try:
        while t.is_alive():
            t.join(0.2)
    finally:
        signal.signal(signal.SIGINT, prev)

    result = box.get('result')
    if result is None:
        return 1
    if result.durationMs:
        print(f'[{result.durationMs / 1000:.1f}s]', file=sys.stderr)
    return exit_status(result)


if __name__ == '__main__':
    sys.exit(main())
