from multiprocessing.pool import ThreadPool
import functools
import logging
import socket
import time
import typing
import re
from typing import Iterable, Union, List, Optional, Sequence, Callable
from urllib.parse import urlparse

import dataclasses
from datetime import datetime, timezone
from .protocol import (
    Protocol, Session, CandidatePool, Negotiated, Rejected, ConnectionFailed, HandshakeOutcome,
    RankedCipher, CipherAvailability, NO_CIPHER_SENTINELS,
    UsageError, ConnectionError, ProxyError, NegotiationRejected, ProtocolUnsupported, BadServerResponse,
)

logger = logging.getLogger(__name__)

# Default number of workers/threads/concurrent connections to use in the all-ciphers scan.
DEFAULT_MAX_WORKERS: int = 6

# Default socket connection timeout, in seconds.
DEFAULT_TIMEOUT: float = 2

# Default number of handshakes averaged by the benchmark.
DEFAULT_BENCHMARK_REPETITIONS: int = 30

# Protocols are always attempted oldest first.
DEFAULT_PROTOCOLS: Sequence[Protocol] = tuple(sorted(Protocol))

@dataclasses.dataclass
class ConnectionSettings:
    """
    Settings for a connection to a server, including the host, port, and proxy.
    """
    host: str
    port: int = 443
    # Value for the SNI extension, None to not send it.
    server_name: Optional[str] = None
    proxy: Optional[str] = None
    timeout_in_seconds: Optional[float] = DEFAULT_TIMEOUT
    date: datetime = dataclasses.field(default_factory=lambda: datetime.now(tz=timezone.utc).replace(microsecond=0))

    @property
    def target(self) -> str:
        return f'{self.host}:{self.port}'

class Toolchain(typing.Protocol):
    """
    A TLS implementation able to list the ciphers it knows and to perform a single handshake
    restricted to a list of ciphers and one protocol version.

    `handshake` raises ConnectionError, NegotiationRejected, ProtocolUnsupported or BadServerResponse.
    """
    def known_ciphers(self) -> List[str]:
        ...

    def handshake(self, settings: ConnectionSettings, ciphers: Sequence[str], protocol: Protocol) -> Session:
        ...

def make_socket(settings: ConnectionSettings) -> socket.socket:
    """
    Creates and connects a socket to the target server, through the chosen proxy if any.
    """
    socket_host, socket_port = None, None # To appease the type checker.
    try:
        if not settings.proxy:
            socket_host, socket_port = settings.host, settings.port
            return socket.create_connection((socket_host, socket_port), timeout=settings.timeout_in_seconds)

        if not settings.proxy.startswith('http://'):
            raise ProxyError("Only HTTP proxies are supported at the moment.", settings.proxy)

        socket_host, socket_port = parse_target(settings.proxy, 80)

        sock = socket.create_connection((socket_host, socket_port), timeout=settings.timeout_in_seconds)
        sock.send(f"CONNECT {settings.host}:{settings.port} HTTP/1.1\r\nhost:{socket_host}\r\n\r\n".encode('utf-8'))
        sock_file = sock.makefile('r', newline='\r\n')
        line = sock_file.readline()
        if not re.fullmatch(r'HTTP/1\.[01] 200 Connection [Ee]stablished\r\n', line):
            sock_file.close()
            sock.close()
            raise ProxyError("Proxy refused the connection: ", line)
        while True:
            line = sock_file.readline()
            if line == '\r\n':
                break
            if not line:
                # EOF before the end of the headers.
                sock_file.close()
                sock.close()
                raise ProxyError("Proxy closed the connection after accepting it")
        return sock
    except socket.timeout as e:
        raise ConnectionError(f"Connection to {socket_host}:{socket_port} timed out after {settings.timeout_in_seconds} seconds") from e
    except socket.gaierror as e:
        raise ConnectionError(f"Could not resolve host {socket_host}") from e
    except socket.error as e:
        raise ConnectionError(f"Could not connect to {socket_host}:{socket_port}") from e

@functools.lru_cache(maxsize=None)
def _warn_protocol_unsupported(protocol: Protocol, reason: str) -> None:
    # Cached so the warning is shown once, not once per round.
    logger.warning(f"{protocol.label} is unsupported by the local TLS toolchain, skipping it: {reason}")

def classify_session(session: Optional[Session], pool: CandidatePool, protocol: Protocol) -> HandshakeOutcome:
    """
    Converts the session metadata reported by a toolchain into a handshake outcome.
    Missing metadata is never taken as a success.
    """
    if session is None or session.protocol is None or session.cipher is None:
        return ConnectionFailed('no session metadata reported')
    if session.cipher in NO_CIPHER_SENTINELS:
        return Rejected('server negotiated no cipher')
    if session.protocol != protocol:
        # Server picked a protocol we didn't ask for.
        logger.info(f"Server attempted to downgrade protocol from {protocol.label} to {session.protocol.label}")
        return Rejected(f'server negotiated {session.protocol.label} instead of {protocol.label}')
    if session.cipher not in pool:
        return Rejected(f'server negotiated {session.cipher}, which was not offered')
    return Negotiated(session.cipher, {protocol}, session.forward_secrecy)

def try_handshake(settings: ConnectionSettings, toolchain: Toolchain, pool: CandidatePool, protocol: Protocol) -> HandshakeOutcome:
    """
    Attempts one handshake offering the ciphers in `pool` over a single protocol version.
    Never raises for network or negotiation errors, they are converted into the outcome.
    """
    ciphers = list(pool)
    if not ciphers:
        return Rejected('empty candidate pool')

    logger.debug(f"Offering {len(ciphers)} ciphers over {protocol.label}: {ciphers}")
    try:
        session = toolchain.handshake(settings, ciphers, protocol)
    except NegotiationRejected as e:
        logger.debug(f'{protocol.label} handshake rejected: {e}')
        return Rejected(str(e))
    except ProtocolUnsupported as e:
        _warn_protocol_unsupported(protocol, str(e))
        return ConnectionFailed(f'{protocol.label} unsupported by toolchain')
    except BadServerResponse as e:
        logger.debug(f'{protocol.label} handshake produced unreadable session metadata: {e!r}')
        return ConnectionFailed(str(e))
    except ConnectionError as e:
        logger.debug(f'{protocol.label} connection failed: {e}')
        return ConnectionFailed(str(e))

    outcome = classify_session(session, pool, protocol)
    logger.debug(f'{protocol.label} outcome: {outcome!r}')
    return outcome

def try_handshake_with_fallback(settings: ConnectionSettings, toolchain: Toolchain, pool: CandidatePool, protocols: Iterable[Protocol] = DEFAULT_PROTOCOLS) -> HandshakeOutcome:
    """
    Tries every protocol version, oldest to newest, and merges the versions that negotiated
    the same cipher as the first successful one.

    If no version succeeds, returns ConnectionFailed when every version failed to connect, else Rejected.
    """
    accepted: Optional[Negotiated] = None
    failures: List[HandshakeOutcome] = []
    for protocol in sorted(protocols):
        outcome = try_handshake(settings, toolchain, pool, protocol)
        if not isinstance(outcome, Negotiated):
            failures.append(outcome)
        elif accepted is None:
            accepted = Negotiated(outcome.cipher, set(outcome.protocols), outcome.forward_secrecy)
        elif outcome.cipher == accepted.cipher:
            accepted.protocols.update(outcome.protocols)
            accepted.forward_secrecy = outcome.forward_secrecy or accepted.forward_secrecy
        else:
            # The other cipher is still in the pool and will be reached in a later round.
            logger.debug(f'{protocol.label} negotiated {outcome.cipher}, keeping {accepted.cipher} from an older protocol')

    if accepted is not None:
        return accepted
    reason = '; '.join(failure.reason for failure in failures)
    if failures and all(isinstance(failure, ConnectionFailed) for failure in failures):
        return ConnectionFailed(reason)
    return Rejected(reason or 'no protocols to test')

def enumerate_cipher_preference(
    settings: ConnectionSettings,
    toolchain: Toolchain,
    ciphers: Optional[Iterable[str]] = None,
    protocols: Sequence[Protocol] = DEFAULT_PROTOCOLS,
    on_result: Callable[[RankedCipher], None] = lambda r: None,
    ) -> List[RankedCipher]:
    """
    Continually asks the server to pick a cipher from the pool, removing the picked cipher each time,
    until no cipher is accepted. The order of the picks is the server preference.

    `ciphers` defaults to every cipher known to the toolchain.
    """
    pool = CandidatePool.of(toolchain.known_ciphers() if ciphers is None else ciphers)
    ranking: List[RankedCipher] = []

    logger.info(f"Enumerating cipher preference of {settings.target} with {len(pool)} ciphers and protocols {[p.label for p in protocols]}")

    while len(pool):
        outcome = try_handshake_with_fallback(settings, toolchain, pool, protocols)
        if not isinstance(outcome, Negotiated):
            # Connection failures can't be told apart from exhaustion, both end the enumeration.
            logger.info(f"Round {len(ranking) + 1} ended the enumeration: {outcome!r}")
            break

        ranked = RankedCipher(
            rank=len(ranking) + 1,
            cipher=outcome.cipher,
            protocols=outcome.protocols,
            forward_secrecy=outcome.forward_secrecy,
        )
        logger.info(f"Rank {ranked.rank}: {ranked.cipher} over {sorted(p.label for p in ranked.protocols)}")
        ranking.append(ranked)
        on_result(ranked)
        pool = pool.exclude(outcome.cipher)

    return ranking

def benchmark_cipher(settings: ConnectionSettings, toolchain: Toolchain, cipher: str, protocol: Protocol, repetitions: int = DEFAULT_BENCHMARK_REPETITIONS) -> Optional[int]:
    """
    Repeats a handshake with a single cipher and protocol, and returns the average duration in microseconds.
    Stops at the first failed handshake, averaging the completed ones. Returns None if none completed.
    """
    pool = CandidatePool.of([cipher])
    durations: List[float] = []
    for i in range(repetitions):
        start = time.perf_counter()
        outcome = try_handshake(settings, toolchain, pool, protocol)
        elapsed = time.perf_counter() - start
        if not isinstance(outcome, Negotiated):
            logger.info(f"Benchmark of {cipher} stopped after {i} of {repetitions} handshakes: {outcome!r}")
            break
        durations.append(elapsed)

    if not durations:
        return None
    return round(sum(durations) / len(durations) * 1_000_000)

def benchmark_ranking(
    settings: ConnectionSettings,
    toolchain: Toolchain,
    ranking: Sequence[RankedCipher],
    repetitions: int = DEFAULT_BENCHMARK_REPETITIONS,
    progress: Callable[[int, int], None] = lambda current, total: None,
    ) -> None:
    """
    Fills `benchmark_micros` of each ranked cipher, using the newest protocol it was seen with.
    The ranking itself is left untouched.
    """
    logger.info(f"Benchmarking {len(ranking)} ciphers with {repetitions} handshakes each")
    for i, ranked in enumerate(ranking):
        ranked.benchmark_micros = benchmark_cipher(settings, toolchain, ranked.cipher, max(ranked.protocols), repetitions)
        progress(i + 1, len(ranking))

def scan_all_ciphers(
    settings: ConnectionSettings,
    toolchain: Toolchain,
    ciphers: Optional[Iterable[str]] = None,
    protocols: Sequence[Protocol] = DEFAULT_PROTOCOLS,
    max_workers: int = DEFAULT_MAX_WORKERS,
    progress: Callable[[int, int], None] = lambda current, total: None,
    ) -> List[CipherAvailability]:
    """
    Offers each cipher alone, over every protocol, and reports which ones the server accepts.
    Results are sorted by cipher name. Attempts are independent, so they run in parallel
    with up to `max_workers` threads connecting at the same time.
    """
    names = sorted(set(toolchain.known_ciphers() if ciphers is None else ciphers))
    logger.info(f"Testing {len(names)} ciphers individually on {settings.target}")

    def test_cipher(cipher: str) -> CipherAvailability:
        outcome = try_handshake_with_fallback(settings, toolchain, CandidatePool.of([cipher]), protocols)
        if isinstance(outcome, Negotiated):
            return CipherAvailability(cipher, outcome.protocols)
        return CipherAvailability(cipher)

    results: List[CipherAvailability] = []
    with ThreadPool(max_workers) as pool:
        # imap keeps the input order, so results stay sorted.
        for i, result in enumerate(pool.imap(test_cipher, names)):
            results.append(result)
            progress(i + 1, len(names))
    return results

@dataclasses.dataclass
class ServerScanResult:
    connection: ConnectionSettings
    protocols: List[Protocol]
    known_ciphers: List[str]
    ciphersuites: List[RankedCipher]
    all_ciphers: Optional[List[CipherAvailability]] = None
    # Handshakes per benchmarked cipher, 0 when the benchmark did not run.
    benchmark_repetitions: int = 0

def scan_server(
    connection_settings: Union[ConnectionSettings, str],
    toolchain: Optional[Toolchain] = None,
    protocols: Sequence[Protocol] = DEFAULT_PROTOCOLS,
    ciphers: Optional[Iterable[str]] = None,
    benchmark_repetitions: int = 0,
    do_scan_all_ciphers: bool = False,
    max_workers: int = DEFAULT_MAX_WORKERS,
    progress: Callable[[int, int], None] = lambda current, total: None,
    ) -> ServerScanResult:
    """
    Enumerates the server cipher preference, then optionally benchmarks each ranked cipher
    (`benchmark_repetitions` > 0) and tests every known cipher individually (`do_scan_all_ciphers`).

    `toolchain` defaults to pyOpenSSL.
    """
    if isinstance(connection_settings, str):
        host, port = parse_target(connection_settings)
        connection_settings = ConnectionSettings(host, port, server_name=host)

    if toolchain is None:
        from .openssl import OpenSSLToolchain
        toolchain = OpenSSLToolchain()

    known_ciphers = list(toolchain.known_ciphers() if ciphers is None else ciphers)
    logger.info(f"Scanning {connection_settings.target}")

    result = ServerScanResult(
        connection=connection_settings,
        protocols=sorted(protocols),
        known_ciphers=known_ciphers,
        ciphersuites=enumerate_cipher_preference(connection_settings, toolchain, known_ciphers, protocols),
    )

    if benchmark_repetitions > 0:
        result.benchmark_repetitions = benchmark_repetitions
        benchmark_ranking(connection_settings, toolchain, result.ciphersuites, benchmark_repetitions, progress)

    if do_scan_all_ciphers:
        result.all_ciphers = scan_all_ciphers(connection_settings, toolchain, known_ciphers, protocols, max_workers, progress)

    return result

def parse_target(target: str, default_port: int = 443) -> tuple[str, int]:
    """
    Parses the target string into a host and port, stripping protocol and path.
    Raises UsageError for a missing host or an invalid port.
    """
    if not target or not target.strip():
        raise UsageError('Missing target')
    if not re.match(r'\w+://', target):
        # Without a scheme, urlparse will treat the target as a path.
        # Prefix // to make it a netloc.
        url = urlparse('//' + target.strip())
    else:
        url = urlparse(target.strip(), scheme='https')
    try:
        port = url.port
    except ValueError as e:
        raise UsageError(f'Invalid port in target {target!r}') from e
    if not url.hostname:
        raise UsageError(f'Missing host in target {target!r}')
    return url.hostname, port if port else default_port
