"""Account addresses: flags, checksums and the user-friendly base64 form."""

from __future__ import annotations

import base64
import binascii
import enum
import json
import re
from dataclasses import dataclass

_URL_B64 = re.compile(r"[A-Za-z0-9_-]*")


class AddressError(ValueError):
    """Raised when an address string cannot be parsed."""


class AddrType(enum.IntEnum):
    NONE = 0
    EXT = 1
    STD = 2
    VAR = 3


def set_bit(n: int, pos: int) -> int:
    """Return the byte n with bit pos set."""
    return (n | (1 << pos)) & 0xFF


def clear_bit(n: int, pos: int) -> int:
    """Return the byte n with bit pos cleared."""
    return n & ~(1 << pos) & 0xFF


def has_bit(n: int, pos: int) -> bool:
    """Tell whether bit pos of n is set."""
    return n & (1 << pos) > 0


def parse_flags(data: int) -> tuple[bool, bool]:
    """Return (bounceable, testnet) decoded from a flags byte."""
    return not has_bit(data, 6), has_bit(data, 7)


@dataclass
class Address:
    addr_type: AddrType = AddrType.NONE
    workchain: int = 0
    bits_len: int = 0
    data: bytes = b""
    bounceable: bool = False
    testnet: bool = False

    def is_addr_none(self) -> bool:
        return self.addr_type == AddrType.NONE

    def flags_to_byte(self) -> int:
        flags = 0b00010001
        if not self.bounceable:
            flags = set_bit(flags, 6)
        if self.testnet:
            flags = set_bit(flags, 7)
        return flags

    def checksum_data(self) -> bytes:
        """The 34 bytes that the checksum covers: flags, workchain, 32 data bytes."""
        body = bytes(self.data[:32]).ljust(32, b"\x00")
        return bytes([self.flags_to_byte(), self.workchain & 0xFF]) + body

    def checksum(self) -> int:
        return binascii.crc_hqx(self.checksum_data(), 0)

    def __str__(self) -> str:
        if self.addr_type == AddrType.STD:
            raw = self.checksum_data()
            raw += self.checksum().to_bytes(2, "big")
            return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")
        if self.addr_type == AddrType.EXT:
            return "EXT_ADDRESS"
        if self.addr_type == AddrType.VAR:
            return "VAR_ADDRESS"
        return "NONE"

    def to_json(self) -> str:
        return json.dumps(str(self))

    def dump(self) -> str:
        return (
            f"human-readable address: {self} "
            f"isBounceable: {str(self.bounceable).lower()}, "
            f"isTestnetOnly: {str(self.testnet).lower()}, "
            f"data.len: {len(self.data)}"
        )


def new_address(flags: int, workchain: int, data: bytes) -> Address:
    """Standard 256-bit address; workchain is a byte read as signed."""
    bounceable, testnet = parse_flags(flags)
    workchain &= 0xFF
    if workchain >= 0x80:
        workchain -= 0x100
    return Address(
        addr_type=AddrType.STD,
        workchain=workchain,
        bits_len=256,
        data=bytes(data),
        bounceable=bounceable,
        testnet=testnet,
    )


def new_address_var(flags: int, workchain: int, bits_len: int, data: bytes) -> Address:
    bounceable, testnet = parse_flags(flags)
    return Address(
        addr_type=AddrType.VAR,
        workchain=workchain,
        bits_len=bits_len,
        data=bytes(data),
        bounceable=bounceable,
        testnet=testnet,
    )


def new_address_ext(flags: int, bits_len: int, data: bytes) -> Address:
    bounceable, testnet = parse_flags(flags)
    return Address(
        addr_type=AddrType.EXT,
        workchain=0,
        bits_len=bits_len,
        data=bytes(data),
        bounceable=bounceable,
        testnet=testnet,
    )


def new_address_none() -> Address:
    return Address(addr_type=AddrType.NONE)


def _decode_url_b64(text: str) -> bytes:
    if not _URL_B64.fullmatch(text) or len(text) % 4 == 1:
        raise AddressError("illegal base64 data")
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.b64decode(padded, altchars=b"-_", validate=True)
    except binascii.Error as exc:
        raise AddressError("illegal base64 data") from exc


def parse_addr(addr: str) -> Address:
    """Parse a user-friendly address string, verifying its checksum."""
    data = _decode_url_b64(addr)
    if len(data) != 36:
        raise AddressError("incorrect address data")
    if binascii.crc_hqx(data[:34], 0) != int.from_bytes(data[34:], "big"):
        raise AddressError("invalid address")
    return new_address(data[0], data[1], data[2:34])