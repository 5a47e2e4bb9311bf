from datetime import datetime, timedelta, timezone
import socket
import threading
import pytest
from OpenSSL import SSL
from cipher_order import *
from cipher_order.openssl import OpenSSLToolchain, classify_ssl_error, forward_secrecy_from_cipher_name, forward_secrecy_from_group, get_forward_secrecy, is_tls13_cipher
from cipher_order.report import format_forward_secrecy

def test_known_ciphers():
    ciphers = OpenSSLToolchain().known_ciphers()
    assert ciphers
    assert len(ciphers) == len(set(ciphers))
    assert 'TLS_AES_256_GCM_SHA384' in ciphers
    assert 'ECDHE-RSA-AES256-GCM-SHA384' in ciphers
    assert not any('PSK' in cipher or 'SRP' in cipher for cipher in ciphers)

def test_custom_cipher_string():
    ciphers = OpenSSLToolchain('aRSA+AESGCM').known_ciphers()
    assert 'ECDHE-RSA-AES128-GCM-SHA256' in ciphers
    assert 'ECDHE-ECDSA-AES128-GCM-SHA256' not in ciphers

def test_is_tls13_cipher():
    assert is_tls13_cipher('TLS_CHACHA20_POLY1305_SHA256')
    assert not is_tls13_cipher('ECDHE-RSA-CHACHA20-POLY1305')

def test_forward_secrecy_from_cipher_name():
    assert forward_secrecy_from_cipher_name('ECDHE-ECDSA-AES256-GCM-SHA384') == ForwardSecrecy('ECDHE')
    assert forward_secrecy_from_cipher_name('TLS_AES_128_GCM_SHA256') == ForwardSecrecy('ECDHE')
    assert forward_secrecy_from_cipher_name('DHE-RSA-AES128-SHA') == ForwardSecrecy('DHE')
    assert forward_secrecy_from_cipher_name('EDH-RSA-DES-CBC3-SHA') == ForwardSecrecy('DHE')
    assert forward_secrecy_from_cipher_name('AES128-SHA') is None
    assert forward_secrecy_from_cipher_name('ECDH-RSA-AES128-SHA') is None

def test_forward_secrecy_from_group():
    assert str(forward_secrecy_from_group('ECDHE', 'x25519')) == 'ECDHE,X25519,253'
    assert str(forward_secrecy_from_group('ECDHE', 'secp256r1')) == 'ECDHE,256'
    assert str(forward_secrecy_from_group('ECDHE', 'prime256v1')) == 'ECDHE,256'
    assert str(forward_secrecy_from_group('ECDHE', 'secp384r1')) == 'ECDHE,384'
    assert str(forward_secrecy_from_group('DHE', 'ffdhe2048')) == 'DHE,2048'
    # TLS 1.3 names ECDHE and DHE ciphers alike.
    assert str(forward_secrecy_from_group('ECDHE', 'ffdhe4096')) == 'DHE,4096'
    assert str(forward_secrecy_from_group('ECDHE', 'X25519MLKEM768')) == 'ECDHE,X25519MLKEM768'

class FakeConnection:
    def __init__(self, cipher, group):
        self.cipher = cipher
        self.group = group

    def get_cipher_name(self):
        return self.cipher

    def get_group_name(self):
        if isinstance(self.group, Exception):
            raise self.group
        return self.group

def test_get_forward_secrecy():
    assert get_forward_secrecy(FakeConnection('ECDHE-RSA-AES256-GCM-SHA384', 'secp521r1')) == ForwardSecrecy('ECDHE', bits=521)
    assert get_forward_secrecy(FakeConnection('DHE-RSA-AES128-SHA', None)) == ForwardSecrecy('DHE')
    assert get_forward_secrecy(FakeConnection('TLS_AES_128_GCM_SHA256', NotImplementedError())) == ForwardSecrecy('ECDHE')
    # Static RSA, whatever group OpenSSL remembers.
    assert get_forward_secrecy(FakeConnection('AES128-SHA', 'x25519')) is None

def test_classify_ssl_error():
    assert isinstance(classify_ssl_error(SSL.Error([('SSL routines', '', 'sslv3 alert handshake failure')])), NegotiationRejected)
    assert isinstance(classify_ssl_error(SSL.Error([('SSL routines', '', 'tlsv1 alert protocol version')])), NegotiationRejected)
    assert isinstance(classify_ssl_error(SSL.Error([('SSL routines', '', 'no protocols available')])), ProtocolUnsupported)
    assert isinstance(classify_ssl_error(SSL.SysCallError(104, 'ECONNRESET')), ConnectionError)

def test_make_context_without_usable_ciphers():
    toolchain = OpenSSLToolchain()
    with pytest.raises(NegotiationRejected):
        toolchain.make_context(['AES128-SHA'], Protocol.TLS1_3)
    with pytest.raises(NegotiationRejected):
        toolchain.make_context(['TLS_AES_128_GCM_SHA256'], Protocol.TLS1_2)
    assert toolchain.make_context(['AES128-SHA'], Protocol.TLS1_2) is not None

def test_handshake_refused(unused_tcp_port):
    settings = ConnectionSettings(host='127.0.0.1', port=unused_tcp_port, timeout_in_seconds=1)
    with pytest.raises(ConnectionError):
        OpenSSLToolchain().handshake(settings, ['AES128-SHA'], Protocol.TLS1_2)

@pytest.fixture
def unused_tcp_port():
    import socket
    with socket.socket() as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]

# Preference of the local server: TLS 1.2 ciphers first, then its TLS 1.3 suites.
SERVER_CIPHERS = b'ECDHE-RSA-AES128-GCM-SHA256:AES128-SHA:ECDHE-RSA-AES256-GCM-SHA384:@SECLEVEL=0'
SERVER_TLS13_CIPHERS = b'TLS_CHACHA20_POLY1305_SHA256:TLS_AES_128_GCM_SHA256'

def make_server_context() -> SSL.Context:
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.asymmetric import ec, rsa
    from cryptography.x509.oid import NameOID

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, 'localhost')])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(key, hashes.SHA256())
    )

    context = SSL.Context(SSL.TLS_SERVER_METHOD)
    context.use_certificate(certificate)
    context.use_privatekey(key)
    context.set_min_proto_version(SSL.TLS1_2_VERSION)
    context.set_options(SSL.OP_CIPHER_SERVER_PREFERENCE)
    context.set_cipher_list(SERVER_CIPHERS)
    context.set_tls13_ciphersuites(SERVER_TLS13_CIPHERS)
    context.set_tmp_ecdh(ec.SECP384R1())
    return context

@pytest.fixture
def tls_server():
    """ Local TLS server that picks ciphers by its own preference and answers one request per connection. """
    context = make_server_context()
    listener = socket.create_server(('127.0.0.1', 0))

    def answer(client: socket.socket) -> None:
        with client:
            connection = SSL.Connection(context, client)
            connection.set_accept_state()
            try:
                connection.do_handshake()
                connection.recv(4096)
                connection.sendall(b'HTTP/1.0 200 OK\r\n\r\n')
                connection.shutdown()
            except (SSL.Error, OSError):
                pass

    def serve() -> None:
        while True:
            try:
                client, _ = listener.accept()
            except OSError:
                return
            threading.Thread(target=answer, args=(client,), daemon=True).start()

    threading.Thread(target=serve, daemon=True).start()
    yield ConnectionSettings(host='127.0.0.1', port=listener.getsockname()[1], server_name='localhost', timeout_in_seconds=5)
    listener.close()

def test_handshake_with_local_server(tls_server):
    session = OpenSSLToolchain().handshake(tls_server, ['AES128-SHA', 'ECDHE-RSA-AES256-GCM-SHA384'], Protocol.TLS1_2)
    assert session == Session('ECDHE-RSA-AES256-GCM-SHA384', Protocol.TLS1_2, ForwardSecrecy('ECDHE', bits=384))

def test_preference_of_local_server(tls_server):
    toolchain = OpenSSLToolchain()
    ranking = enumerate_cipher_preference(tls_server, toolchain, toolchain.known_ciphers(), [Protocol.TLS1_2, Protocol.TLS1_3])
    assert [(row.rank, row.cipher, row.protocols) for row in ranking] == [
        (1, 'ECDHE-RSA-AES128-GCM-SHA256', {Protocol.TLS1_2}),
        (2, 'AES128-SHA', {Protocol.TLS1_2}),
        (3, 'ECDHE-RSA-AES256-GCM-SHA384', {Protocol.TLS1_2}),
        (4, 'TLS_CHACHA20_POLY1305_SHA256', {Protocol.TLS1_3}),
        (5, 'TLS_AES_128_GCM_SHA256', {Protocol.TLS1_3}),
    ]
    assert [format_forward_secrecy(row.forward_secrecy) for row in ranking[:3]] == ['ECDHE,384', 'None', 'ECDHE,384']
    assert all(format_forward_secrecy(row.forward_secrecy).startswith('ECDHE,') for row in ranking[3:])
