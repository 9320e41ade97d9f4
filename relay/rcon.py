"""
RealmOps Relay - RCON Wire Codec
=================================
Framing for the Source-style remote console protocol spoken by most game
servers (Minecraft, Valheim via plugins, Rust, ARK, ...).

Packet layout (all integers little-endian int32):

    | length | request_id | type | body (utf-8) | 0x00 | 0x00 |

``length`` counts everything after itself, so the smallest valid packet
(empty body) has length 10.

Packet types:
    3  SERVERDATA_AUTH            client -> server
    2  SERVERDATA_AUTH_RESPONSE   server -> client
    2  SERVERDATA_EXECCOMMAND     client -> server
    0  SERVERDATA_RESPONSE_VALUE  server -> client

A failed authentication is signalled by an auth response whose request id
is -1.
"""

import asyncio
import struct
from dataclasses import dataclass

from relay.errors import InvalidPacket


PACKET_RESPONSE = 0
PACKET_EXEC_COMMAND = 2
PACKET_AUTH_RESPONSE = 2
PACKET_AUTH = 3

AUTH_FAILED_ID = -1

MAX_PACKET_SIZE = 4096
MIN_PACKET_LENGTH = 10

# Servers split long output into 4096-byte bodies; the header and
# terminators come on top of that.
MAX_INBOUND_LENGTH = MAX_PACKET_SIZE + 14

_HEADER = struct.Struct("<ii")
_LENGTH = struct.Struct("<i")


@dataclass(frozen=True)
class Packet:
    request_id: int
    type: int
    body: str = ""


def encode_packet(packet: Packet) -> bytes:
    """
    Serialize a packet for the wire.

    Raises:
        InvalidPacket: If the encoded packet exceeds MAX_PACKET_SIZE.
    """
    payload = (
        _HEADER.pack(packet.request_id, packet.type)
        + packet.body.encode("utf-8")
        + b"\x00\x00"
    )
    if len(payload) > MAX_PACKET_SIZE:
        raise InvalidPacket(f"packet too large ({len(payload)} bytes)")
    return _LENGTH.pack(len(payload)) + payload


def decode_packet(data: bytes) -> Packet:
    """Decode the bytes following the length prefix."""
    if len(data) < MIN_PACKET_LENGTH:
        raise InvalidPacket(f"packet too short ({len(data)} bytes)")
    request_id, packet_type = _HEADER.unpack_from(data)
    body = data[8:-2].decode("utf-8", errors="replace")
    return Packet(request_id, packet_type, body)


async def read_packet(reader: asyncio.StreamReader) -> Packet:
    """
    Read one packet from the stream.

    Raises:
        asyncio.IncompleteReadError: If the stream ends mid-packet.
        InvalidPacket: If the length prefix is out of range.
    """
    (length,) = _LENGTH.unpack(await reader.readexactly(_LENGTH.size))
    if length < MIN_PACKET_LENGTH or length > MAX_INBOUND_LENGTH:
        raise InvalidPacket(f"invalid packet length {length}")
    return decode_packet(await reader.readexactly(length))
