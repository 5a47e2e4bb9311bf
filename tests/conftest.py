from typing import Dict, Iterable, List, Optional, Sequence, Set
import pytest
from cipher_order import *

KNOWN_CIPHERS = [
    'TLS_AES_256_GCM_SHA384',
    'TLS_AES_128_GCM_SHA256',
    'ECDHE-RSA-AES256-GCM-SHA384',
    'ECDHE-RSA-AES128-GCM-SHA256',
    'DHE-RSA-AES256-SHA',
    'AES256-SHA',
    'AES128-SHA',
    'DES-CBC3-SHA',
]

def forward_secrecy_for(cipher: str) -> Optional[ForwardSecrecy]:
    if cipher.startswith(('ECDHE-', 'TLS_')):
        return ForwardSecrecy('ECDHE', 'X25519', 253)
    if cipher.startswith('DHE-'):
        return ForwardSecrecy('DHE', bits=2048)
    return None

class SimulatedServer:
    """
    Deterministic TLS responder: always picks its most preferred cipher among the offered ones,
    if the cipher is enabled for the requested protocol.
    """
    def __init__(self, preference: Sequence[str], protocols_by_cipher: Optional[Dict[str, Set[Protocol]]] = None, known: Iterable[str] = KNOWN_CIPHERS, refuse: bool = False):
        self.preference = list(preference)
        self.protocols_by_cipher = protocols_by_cipher or {}
        self.known = list(known)
        self.refuse = refuse
        # Every handshake attempted, as (protocol, offered ciphers).
        self.offers: List[tuple] = []

    def known_ciphers(self) -> List[str]:
        return list(self.known)

    def handshake(self, settings: ConnectionSettings, ciphers: Sequence[str], protocol: Protocol) -> Session:
        self.offers.append((protocol, tuple(ciphers)))
        if self.refuse:
            raise ConnectionError(f'Could not connect to {settings.target}')
        for cipher in self.preference:
            if cipher in ciphers and protocol in self.protocols_by_cipher.get(cipher, set(Protocol)):
                return Session(cipher, protocol, forward_secrecy_for(cipher))
        raise NegotiationRejected('sslv3 alert handshake failure')

@pytest.fixture
def settings() -> ConnectionSettings:
    return ConnectionSettings(host='example.com', port=443, server_name='example.com')
