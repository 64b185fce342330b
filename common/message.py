"""Test packet generation for serial-loopback.

Packets are plain text with no framing: no sync word, no length prefix and no
checksum on the wire. The transport is trusted to return one logical message
per read call, which holds for a local echo but not for every real link.
"""

from dataclasses import dataclass

from common.digest import digest

ENCODING = "utf-8"

# Fixed payload written by the duplex send loop
DUPLEX_MESSAGE = b"Duplex test message"


@dataclass(frozen=True)
class Packet:
    """One round-trip test packet."""

    sequence_index: int  # 1-based
    payload: bytes
    sent_digest: str


def packet_text(sequence_index: int) -> str:
    """Return the human-readable body of packet N."""
    return f"Test packet {sequence_index}"


def make_packet(sequence_index: int) -> Packet:
    """Build packet N with its digest precomputed."""
    if sequence_index < 1:
        raise ValueError(f"sequence_index must be >= 1, got {sequence_index}")
    payload = packet_text(sequence_index).encode(ENCODING)
    return Packet(
        sequence_index=sequence_index,
        payload=payload,
        sent_digest=digest(payload),
    )
