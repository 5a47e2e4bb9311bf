from typing import Any, Iterable, List, Optional, Sequence
from email.utils import format_datetime
import json

from .protocol import RankedCipher, CipherAvailability, ForwardSecrecy, Protocol
from .scan import ServerScanResult

# Marker for ciphers without forward secrecy.
NO_PFS = 'None'

def format_protocols(protocols: Iterable[Protocol]) -> List[str]:
    return [protocol.label for protocol in sorted(protocols)]

def format_forward_secrecy(forward_secrecy: Optional[ForwardSecrecy]) -> str:
    return str(forward_secrecy) if forward_secrecy else NO_PFS

def _align(rows: List[List[str]]) -> str:
    """ Left-aligns each column to its widest cell. """
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    return '\n'.join('  '.join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in rows)

def format_table(result: ServerScanResult) -> str:
    """
    Renders the ranked ciphers as a column aligned table. The header is always present,
    and the benchmark column only when the benchmark ran.
    """
    with_benchmark = result.benchmark_repetitions > 0
    header = ['prio', 'ciphersuite', 'protocols', 'pfs']
    if with_benchmark:
        header.append('avg_handshake_microsec')
    rows = [header]
    for ranked in result.ciphersuites:
        row = [
            str(ranked.rank),
            ranked.cipher,
            ','.join(format_protocols(ranked.protocols)),
            format_forward_secrecy(ranked.forward_secrecy),
        ]
        if with_benchmark:
            row.append('' if ranked.benchmark_micros is None else str(ranked.benchmark_micros))
        rows.append(row)
    return _align(rows)

def format_all_ciphers_table(rows: Sequence[CipherAvailability]) -> str:
    table = [['cipher', 'accepted', 'protocols']]
    for row in rows:
        table.append([row.cipher, 'yes' if row.accepted else 'no', ','.join(format_protocols(row.protocols))])
    return _align(table)

def _ranked_to_json_obj(ranked: RankedCipher) -> dict:
    return {
        'cipher': ranked.cipher,
        'protocols': format_protocols(ranked.protocols),
        'pfs': format_forward_secrecy(ranked.forward_secrecy),
    }

def to_json_document(result: ServerScanResult) -> dict[str, Any]:
    """
    Converts the scan into the JSON document structure: target, RFC 2822 date, and the ranked ciphers.
    """
    document: dict[str, Any] = {
        'target': result.connection.target,
        'date': format_datetime(result.connection.date),
        'ciphersuite': [_ranked_to_json_obj(ranked) for ranked in result.ciphersuites],
    }
    if result.all_ciphers is not None:
        document['allciphers'] = [
            {'cipher': row.cipher, 'accepted': row.accepted, 'protocols': format_protocols(row.protocols)}
            for row in result.all_ciphers
        ]
    return document

def to_json(result: ServerScanResult) -> str:
    return json.dumps(to_json_document(result), separators=(',', ':'))
