#!/usr/bin/env python3
"""Stand-in console command for exercising the runner end to end."""
import argparse
import sys
import time


def main():
    p = argparse.ArgumentParser(description='Probe command for command-runner')
    p.add_argument('words', nargs='*', help='positional args, echoed back one per line')
    p.add_argument('--repeat', type=int, default=3, help='number of stdout lines to print')
    p.add_argument('--stderr-lines', type=int, default=1, help='number of stderr lines to print')
    p.add_argument('--sleep-ms', type=int, default=100, help='sleep between lines (ms)')
    p.add_argument('--exit-code', type=int, default=0, help='exit code to return')
    p.add_argument('--partial', action='store_true', help='end with a line lacking a newline')
    p.add_argument('--locked', action='store_true', help='print a held-lock message and fail')
    p.add_argument('--hang', action='store_true', help='keep printing until killed')
    args = p.parse_args()

    slp = max(0, args.sleep_ms) / 1000.0

    if args.locked:
        print('[ERROR] Lock "app:import-data" is already acquired by another process.', file=sys.stderr, flush=True)
        return sys.exit(1)

    for w in args.words:
        print(f'probe: arg {w}', flush=True)

    for i in range(args.repeat):
        print(f'probe: line {i + 1}/{args.repeat}', flush=True)
        time.sleep(slp)

    for j in range(args.stderr_lines):
        print(f'probe: warn {j + 1}/{args.stderr_lines}', file=sys.stderr, flush=True)
        time.sleep(slp)

    n = 0
    while args.hang:
        n += 1
        print(f'probe: tick {n}', flush=True)
        time.sleep(max(slp, 0.05))

    if args.partial:
        sys.stdout.write('probe: no newline')
        sys.stdout.flush()

    return sys.exit(int(args.exit_code))


if __name__ == '__main__':
    main()
