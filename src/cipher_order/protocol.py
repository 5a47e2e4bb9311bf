from typing import Iterable, Iterator, Optional, Set, Tuple, FrozenSet, Union
from dataclasses import dataclass, field
from functools import total_ordering
from enum import Enum

@total_ordering
class Protocol(Enum):
    # Keep protocols in order of preference.
    TLS1_3 = b"\x03\x04"
    TLS1_2 = b"\x03\x03"
    TLS1_1 = b"\x03\x02"
    TLS1_0 = b"\x03\x01"
    SSLv3 = b"\x03\x00"

    def __repr__(self):
        return self.name
    def __lt__(self, other):
        if self.__class__ != other.__class__:
            return NotImplemented
        return self.value < other.value

    @property
    def label(self) -> str:
        """ Human readable name, as used in reports. """
        return _label_by_protocol[self]

    @classmethod
    def from_openssl_name(cls, name: str) -> 'Protocol':
        """
        Parses the protocol name reported by OpenSSL ('TLSv1', 'TLSv1.2', etc).
        Raises ValueError for unknown names.
        """
        for protocol, openssl_name in _openssl_name_by_protocol.items():
            if name in (openssl_name, protocol.label, protocol.name):
                return protocol
        raise ValueError(f'Unknown protocol name {name!r}')

_label_by_protocol = {
    Protocol.SSLv3: 'SSLv3',
    Protocol.TLS1_0: 'TLSv1.0',
    Protocol.TLS1_1: 'TLSv1.1',
    Protocol.TLS1_2: 'TLSv1.2',
    Protocol.TLS1_3: 'TLSv1.3',
}
_openssl_name_by_protocol = {
    Protocol.SSLv3: 'SSLv3',
    Protocol.TLS1_0: 'TLSv1',
    Protocol.TLS1_1: 'TLSv1.1',
    Protocol.TLS1_2: 'TLSv1.2',
    Protocol.TLS1_3: 'TLSv1.3',
}

# Cipher names reported by toolchains when no cipher was negotiated.
NO_CIPHER_SENTINELS = frozenset(['', '(NONE)', 'NONE', '0000'])

class ScanError(Exception):
    """ Base error class for errors that occur during scanning. """
    pass

class UsageError(ScanError, ValueError):
    """ Invalid or missing scan target. No connection is attempted. """
    pass

class ConnectionError(ScanError):
    """ Class for error in resolving or connecting to a server. """
    pass

class ProxyError(ConnectionError):
    """ Class for errors in connecting through a proxy. """
    pass

class NegotiationRejected(ScanError):
    """ The handshake was refused because none of the offered ciphers is acceptable. """
    pass

class ProtocolUnsupported(ScanError):
    """ The local TLS toolchain is not capable of speaking the requested protocol version. """
    pass

class BadServerResponse(ScanError):
    """ Error for session metadata that is missing or can't be parsed. """
    pass

@dataclass(frozen=True)
class ForwardSecrecy:
    """
    Ephemeral key exchange used by a negotiated cipher suite, e.g. ECDHE over X25519 with 253 bits.
    """
    algorithm: str
    group: Optional[str] = None
    bits: Optional[int] = None

    def __str__(self) -> str:
        return ','.join(str(part) for part in (self.algorithm, self.group, self.bits) if part)

@dataclass
class Session:
    """
    Raw session metadata reported by a TLS toolchain after one handshake.
    """
    cipher: Optional[str]
    protocol: Optional[Protocol]
    forward_secrecy: Optional[ForwardSecrecy] = None

@dataclass(frozen=True)
class CandidatePool:
    """
    Ciphers eligible for negotiation: the `base` universe minus the `excluded` set,
    in the priority order of `base`.
    """
    base: Tuple[str, ...]
    excluded: FrozenSet[str] = frozenset()

    @classmethod
    def of(cls, ciphers: Iterable[str]) -> 'CandidatePool':
        # dict.fromkeys removes duplicates while keeping order.
        return cls(tuple(dict.fromkeys(ciphers)))

    def exclude(self, cipher: str) -> 'CandidatePool':
        return CandidatePool(self.base, self.excluded | {cipher})

    def __iter__(self) -> Iterator[str]:
        return (cipher for cipher in self.base if cipher not in self.excluded)

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __contains__(self, cipher: object) -> bool:
        return cipher in self.base and cipher not in self.excluded

@dataclass
class Negotiated:
    cipher: str
    protocols: Set[Protocol]
    forward_secrecy: Optional[ForwardSecrecy] = None

@dataclass
class Rejected:
    reason: str = ''

@dataclass
class ConnectionFailed:
    reason: str = ''

HandshakeOutcome = Union[Negotiated, Rejected, ConnectionFailed]

@dataclass
class RankedCipher:
    rank: int
    cipher: str
    protocols: Set[Protocol]
    forward_secrecy: Optional[ForwardSecrecy] = None
    # Filled by the benchmark pass, after ranking.
    benchmark_micros: Optional[int] = None

@dataclass
class CipherAvailability:
    """ One row of the all-ciphers scan: a cipher offered alone, and the protocols that accepted it. """
    cipher: str
    protocols: Set[Protocol] = field(default_factory=set)

    @property
    def accepted(self) -> bool:
        return bool(self.protocols)
