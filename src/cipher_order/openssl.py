"""
TLS toolchain backed by pyOpenSSL: lists the ciphers known to the local OpenSSL, and performs
single handshakes restricted to a list of ciphers and one protocol version.
"""
from typing import List, Optional, Sequence
import logging
import select
import socket

from OpenSSL import SSL

from .protocol import Protocol, Session, ForwardSecrecy, ScanError, ConnectionError, NegotiationRejected, ProtocolUnsupported, BadServerResponse
from .scan import ConnectionSettings, make_socket

logger = logging.getLogger(__name__)

# Every cipher OpenSSL knows. PSK and SRP ciphers need credentials shared out of band, so no scan can negotiate them.
ALL_CIPHERS = 'ALL:COMPLEMENTOFALL:-PSK:-SRP'
# Security level 0 keeps OpenSSL from refusing legacy ciphers and protocols on our side of the handshake.
SECURITY_LEVEL = '@SECLEVEL=0'
TLS13_CIPHERS = (
    'TLS_AES_256_GCM_SHA384',
    'TLS_CHACHA20_POLY1305_SHA256',
    'TLS_AES_128_GCM_SHA256',
    'TLS_AES_128_CCM_SHA256',
    'TLS_AES_128_CCM_8_SHA256',
)

# Sent after the handshake so the server has something to answer.
HTTP_REQUEST = b'HEAD / HTTP/1.0\r\n\r\n'

no_flag_by_protocol = {
    Protocol.SSLv3: SSL.OP_NO_SSLv3,
    Protocol.TLS1_0: SSL.OP_NO_TLSv1,
    Protocol.TLS1_1: SSL.OP_NO_TLSv1_1,
    Protocol.TLS1_2: SSL.OP_NO_TLSv1_2,
    Protocol.TLS1_3: SSL.OP_NO_TLSv1_3,
}

def is_tls13_cipher(cipher: str) -> bool:
    """ TLS 1.3 ciphers use IANA names in OpenSSL, everything else uses OpenSSL names without the TLS_ prefix. """
    return cipher.startswith('TLS_')

def forward_secrecy_from_cipher_name(cipher: str) -> Optional[ForwardSecrecy]:
    """
    Infers the key exchange from the cipher name alone, without group or size.
    Used when OpenSSL does not report the negotiated group.
    """
    if is_tls13_cipher(cipher) or cipher.startswith(('ECDHE-', 'AECDH-')):
        return ForwardSecrecy('ECDHE')
    if cipher.startswith(('DHE-', 'EDH-', 'ADH-')):
        return ForwardSecrecy('DHE')
    return None

# Groups as named by OpenSSL. Montgomery curves keep their name, the others are told apart by size.
ecdhe_by_group = {
    'x25519': ('X25519', 253),
    'x448': ('X448', 448),
    'secp256r1': (None, 256),
    'prime256v1': (None, 256),
    'secp384r1': (None, 384),
    'secp521r1': (None, 521),
    'brainpoolp256r1': (None, 256),
    'brainpoolp384r1': (None, 384),
    'brainpoolp512r1': (None, 512),
    'brainpoolp256r1tls13': (None, 256),
    'brainpoolp384r1tls13': (None, 384),
    'brainpoolp512r1tls13': (None, 512),
}

def forward_secrecy_from_group(algorithm: str, group: str) -> ForwardSecrecy:
    """
    Describes an ephemeral key exchange from the name of the negotiated group,
    e.g. 'secp256r1' -> ECDHE,256 and 'ffdhe2048' -> DHE,2048.
    """
    lowered = group.lower()
    if lowered.startswith('ffdhe') and lowered[len('ffdhe'):].isdigit():
        return ForwardSecrecy('DHE', bits=int(lowered[len('ffdhe'):]))
    if lowered in ecdhe_by_group:
        name, bits = ecdhe_by_group[lowered]
        return ForwardSecrecy('ECDHE', name, bits)
    # Hybrid post-quantum groups like X25519MLKEM768 have no single size.
    return ForwardSecrecy(algorithm, group)

def get_forward_secrecy(connection: SSL.Connection) -> Optional[ForwardSecrecy]:
    """
    Describes the ephemeral key exchange of an established connection. Returns None for static key exchanges.
    """
    cipher = connection.get_cipher_name() or ''
    from_name = forward_secrecy_from_cipher_name(cipher)
    if from_name is None:
        return None
    try:
        group = connection.get_group_name()
    except NotImplementedError:
        # Needs OpenSSL 3.2 or newer.
        return from_name
    if not group:
        return from_name
    return forward_secrecy_from_group(from_name.algorithm, group)

def _set_ciphersuites(context: SSL.Context, ciphers: Sequence[str]) -> None:
    """ Restricts the TLS 1.3 ciphers of the context. """
    try:
        context.set_tls13_ciphersuites(':'.join(ciphers).encode('ascii'))
    except SSL.Error as e:
        raise NegotiationRejected(f'OpenSSL refused the TLS 1.3 cipher list {list(ciphers)}: {_ssl_error_reasons(e)}') from e

def _ssl_error_reasons(error: SSL.Error) -> str:
    entries = error.args[0] if error.args and isinstance(error.args[0], list) else error.args
    return ', '.join(str(entry[-1]) if isinstance(entry, tuple) and entry else str(entry) for entry in entries)

def classify_ssl_error(error: SSL.Error) -> ScanError:
    """
    Converts an OpenSSL handshake error. Anything the server answered counts as a rejection,
    except when OpenSSL could not even offer the protocol.
    """
    reasons = _ssl_error_reasons(error)
    if isinstance(error, SSL.SysCallError):
        # live.com sends a RST packet when no matching protocols are found.
        return ConnectionError(f'Connection closed during handshake: {reasons}')
    if 'no protocols available' in reasons:
        return ProtocolUnsupported(reasons)
    return NegotiationRejected(reasons)

class OpenSSLToolchain:
    """
    Performs handshakes with pyOpenSSL.

    `cipher_string` selects the universe of known ciphers, in OpenSSL cipher list syntax.
    """
    def __init__(self, cipher_string: str = ALL_CIPHERS):
        self.cipher_string = cipher_string

    def known_ciphers(self) -> List[str]:
        context = SSL.Context(SSL.TLS_CLIENT_METHOD)
        context.set_cipher_list(f'{self.cipher_string}:{SECURITY_LEVEL}'.encode('ascii'))
        _set_ciphersuites(context, TLS13_CIPHERS)
        return SSL.Connection(context, None).get_cipher_list()

    def make_context(self, ciphers: Sequence[str], protocol: Protocol) -> SSL.Context:
        """
        Creates a context that speaks only `protocol` and offers only the `ciphers` usable with it.
        Raises NegotiationRejected without connecting if none of them is.
        """
        legacy_ciphers = [cipher for cipher in ciphers if not is_tls13_cipher(cipher)]
        tls13_ciphers = [cipher for cipher in ciphers if is_tls13_cipher(cipher)]

        context = SSL.Context(SSL.TLS_CLIENT_METHOD)
        forbidden_versions = sum(flag for other, flag in no_flag_by_protocol.items() if other != protocol)
        # Servers without secure renegotiation are refused by default since OpenSSL 3.
        context.set_options(forbidden_versions | getattr(SSL, 'OP_LEGACY_SERVER_CONNECT', 0))

        if protocol == Protocol.TLS1_3:
            if not tls13_ciphers:
                raise NegotiationRejected('No TLS 1.3 ciphers left to offer')
            # Ignored by TLS 1.3 handshakes, but OpenSSL needs a valid list.
            context.set_cipher_list(f'{self.cipher_string}:{SECURITY_LEVEL}'.encode('ascii'))
            _set_ciphersuites(context, tls13_ciphers)
        else:
            if not legacy_ciphers:
                raise NegotiationRejected(f'No {protocol.label} ciphers left to offer')
            try:
                context.set_cipher_list(':'.join(legacy_ciphers + [SECURITY_LEVEL]).encode('ascii'))
            except SSL.Error as e:
                raise NegotiationRejected(f'OpenSSL refused the cipher list: {_ssl_error_reasons(e)}') from e
        return context

    def handshake(self, settings: ConnectionSettings, ciphers: Sequence[str], protocol: Protocol) -> Session:
        context = self.make_context(ciphers, protocol)
        with make_socket(settings) as sock:
            connection = SSL.Connection(context, sock)
            connection.set_connect_state()
            # Necessary for servers that expect SNI. Otherwise expect "tlsv1 alert internal error".
            if settings.server_name is not None:
                connection.set_tlsext_host_name(settings.server_name.encode('utf-8'))
            self._do_handshake(connection, sock)

            version_name = connection.get_protocol_version_name()
            try:
                negotiated_protocol = Protocol.from_openssl_name(version_name)
            except ValueError as e:
                raise BadServerResponse(f'OpenSSL reported unknown protocol {version_name!r}') from e
            session = Session(connection.get_cipher_name(), negotiated_protocol, get_forward_secrecy(connection))
            logger.debug(f'Handshake with {settings.target} negotiated {session}')

            self._send_http_request(connection, sock)
            try:
                connection.shutdown()
            except SSL.Error as e:
                logger.debug(f'Unclean shutdown: {e!r}')
        return session

    def _do_handshake(self, connection: SSL.Connection, sock: socket.socket) -> None:
        while True:
            try:
                connection.do_handshake()
                return
            except SSL.WantReadError as e:
                rd, _, _ = select.select([sock], [], [], sock.gettimeout())
                if not rd:
                    raise ConnectionError('Timed out during handshake') from e
            except SSL.WantWriteError as e:
                _, wr, _ = select.select([], [sock], [], sock.gettimeout())
                if not wr:
                    raise ConnectionError('Timed out during handshake') from e
            except SSL.Error as e:
                raise classify_ssl_error(e) from e
            except OSError as e:
                raise ConnectionError(f'Connection failed during handshake: {e}') from e

    def _send_http_request(self, connection: SSL.Connection, sock: socket.socket) -> None:
        try:
            connection.sendall(HTTP_REQUEST)
            rd, _, _ = select.select([sock], [], [], sock.gettimeout())
            if rd:
                connection.recv(4096)
        except (SSL.Error, OSError) as e:
            # The session is already known at this point.
            logger.debug(f'No response to HTTP request: {e!r}')
