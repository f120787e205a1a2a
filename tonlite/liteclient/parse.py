"""Decoding of packets received from a lite server."""

from __future__ import annotations

import struct
from dataclasses import dataclass

TCP_PING = 1292381082
TCP_PONG = -597034237
ADNL_QUERY = -1265895046
ADNL_QUERY_RESPONSE = 262964246
LITE_SERVER_QUERY = 2039219935


class ResponseParseError(ValueError):
    """Raised when a server packet cannot be decoded."""


@dataclass(frozen=True)
class ServerResponse:
    type_id: int
    query_id: str
    payload: bytes = b""


def _int32(data: bytes) -> int:
    return struct.unpack_from("<i", data)[0]


def parse_server_resp(data: bytes) -> ServerResponse:
    """Decode a pong or ADNL query response; other types come back with no query id."""
    data = bytes(data)
    if len(data) <= 4:
        raise ResponseParseError(f"too short adnl packet: {len(data)}")

    type_id = _int32(data)
    body = data[4:]

    if type_id == TCP_PONG:
        if len(body) < 8:
            raise ResponseParseError(f"too short pong packet: {len(body)}")
        return ServerResponse(type_id, body[:8].hex())

    if type_id == ADNL_QUERY_RESPONSE:
        if len(body) <= 32:
            raise ResponseParseError(f"too short adnl query response packet: {len(body)}")
        query_id = body[:32].hex()
        body = body[32:]

        length = body[0]
        if length == 0xFE:
            if len(body) <= 4:
                raise ResponseParseError(
                    f"too short adnl query response packet: {len(body)}"
                )
            length = int.from_bytes(body[:4], "little") >> 8
            body = body[4:]
        else:
            body = body[1:]

        if len(body) < length:
            raise ResponseParseError(f"adnl payload size incorrect: {length}")
        if length < 4:
            raise ResponseParseError(f"adnl payload too short for type id: {length}")

        return ServerResponse(_int32(body), query_id, body[4:length])

    return ServerResponse(type_id, "")