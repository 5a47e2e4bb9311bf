from .scan import scan_server, parse_target, ConnectionSettings, DEFAULT_TIMEOUT, DEFAULT_MAX_WORKERS, DEFAULT_BENCHMARK_REPETITIONS, DEFAULT_PROTOCOLS
from .protocol import Protocol, UsageError
from .openssl import OpenSSLToolchain
from .report import format_table, format_all_ciphers_table, to_json

import os
import sys
import logging
import argparse
from typing import Optional, List

def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m cipher_order", formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        description="List the cipher suites a TLS server accepts, in the server's order of preference.")
    parser.add_argument("target", help="server to scan, in the form of 'example.com:443', 'example.com', or even a full URL")
    parser.add_argument("--timeout", "-t", dest="timeout", type=float, default=DEFAULT_TIMEOUT, help="socket connection timeout in seconds")
    parser.add_argument("--benchmark", "-b", default=False, action=argparse.BooleanOptionalAction, help="measure the average handshake time of each accepted cipher")
    parser.add_argument("--repetitions", "-r", type=int, default=DEFAULT_BENCHMARK_REPETITIONS, help="number of handshakes per cipher when benchmarking")
    parser.add_argument("--max-workers", "-w", type=int, default=DEFAULT_MAX_WORKERS, help="maximum number of concurrent connections for --all-ciphers")
    parser.add_argument("--server-name-indication", "-s", default=None, help="value to be used in the SNI extension, defaults to the target host, pass empty string to not send SNI")
    parser.add_argument("--protocols", "-p", dest='protocols_str', default=','.join(p.name for p in DEFAULT_PROTOCOLS), help="comma separated list of TLS/SSL protocols to test")
    parser.add_argument("--proxy", default=None, help="HTTP proxy to use for the connection, defaults to the env variable 'https_proxy' else no proxy")
    parser.add_argument("--progress", default=False, action=argparse.BooleanOptionalAction, help="write lines with progress percentages to stderr")
    modes = parser.add_mutually_exclusive_group()
    modes.add_argument("--verbose", "-v", action="count", default=0, help="increase output verbosity, and list the known ciphers before scanning")
    modes.add_argument("--all-ciphers", "-a", default=False, action="store_true", help="also test every known cipher individually")
    modes.add_argument("--json", "-j", default=False, action="store_true", help="print the result as JSON")
    return parser

def main(argv: Optional[List[str]] = None) -> int:
    parser = make_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        datefmt='%Y-%m-%d %H:%M:%S',
        format='{asctime}.{msecs:0<3.0f} {module} {threadName} {levelname}: {message}',
        style='{',
        level=[logging.WARNING, logging.INFO, logging.DEBUG][min(2, args.verbose)]
    )

    if not args.protocols_str:
        parser.error("no protocols to test")
    try:
        protocols = [Protocol[p] for p in args.protocols_str.split(',')]
    except KeyError as e:
        parser.error(f'invalid protocol name "{e.args[0]}", must be one of {", ".join(p.name for p in DEFAULT_PROTOCOLS)}')

    try:
        host, port = parse_target(args.target)
    except UsageError as e:
        parser.error(str(e))

    if args.timeout <= 0:
        parser.error("timeout must be positive")
    if args.repetitions < 1:
        parser.error("repetitions must be at least 1")

    proxy = os.environ.get('https_proxy') or os.environ.get('HTTPS_PROXY') if args.proxy is None else args.proxy
    if proxy:
        if not proxy.startswith('http://'):
            parser.error(f"unsupported proxy {proxy!r}, only http:// proxies are supported")
        try:
            parse_target(proxy, 80)
        except UsageError as e:
            parser.error(f'invalid proxy: {e}')

    if args.progress:
        progress = lambda current, total: print(f'{current/total:.0%}', flush=True, file=sys.stderr)
    else:
        progress = lambda current, total: None

    server_name: Optional[str]
    if args.server_name_indication is None:
        # Argument unset, default to host.
        server_name = host
    elif args.server_name_indication == '':
        # Argument explicitly set to empty string, interpret as "no SNI".
        server_name = None
    else:
        server_name = args.server_name_indication

    toolchain = OpenSSLToolchain()
    known_ciphers = toolchain.known_ciphers()
    if args.verbose:
        print(f'{len(known_ciphers)} known ciphers: {":".join(known_ciphers)}', file=sys.stderr)

    try:
        result = scan_server(
            ConnectionSettings(
                host=host,
                port=port,
                server_name=server_name,
                proxy=proxy,
                timeout_in_seconds=args.timeout,
            ),
            toolchain,
            protocols=protocols,
            ciphers=known_ciphers,
            benchmark_repetitions=args.repetitions if args.benchmark else 0,
            do_scan_all_ciphers=args.all_ciphers,
            max_workers=args.max_workers,
            progress=progress,
        )
    except KeyboardInterrupt:
        # No partial round is reported.
        print('Scan interrupted', file=sys.stderr)
        return 130

    if args.json:
        print(to_json(result))
    else:
        print(format_table(result))
        if result.all_ciphers is not None:
            print()
            print(format_all_ciphers_table(result.all_ciphers))
    return 0

if __name__ == '__main__':
    sys.exit(main())
