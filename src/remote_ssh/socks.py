"""
Minimal SOCKS server handshake (SOCKS5 without authentication, SOCKS4 and
SOCKS4a), CONNECT only.
"""

import asyncio
import socket
import struct
from dataclasses import dataclass
from enum import Enum

SOCKS4_VERSION = 0x04
SOCKS5_VERSION = 0x05

SOCKS4_GRANTED = 0x5A
SOCKS4_REJECTED = 0x5B

NO_AUTH = 0x00
NO_ACCEPTABLE_METHODS = 0xFF


class Command(Enum):
    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


class AddressType(Enum):
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class ReplyCode(Enum):
    """SOCKS5 reply codes"""
    SUCCESS = 0x00
    GENERAL_FAILURE = 0x01
    CONNECTION_NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


class SocksError(Exception):
    """A client sent a request we cannot serve"""

    def __init__(self, message: str, reply_code: ReplyCode = ReplyCode.GENERAL_FAILURE):
        super().__init__(message)
        self.reply_code = reply_code


@dataclass(frozen=True)
class SocksRequest:
    """A parsed CONNECT request"""
    version: int
    host: str
    port: int

    def reply(self, code: ReplyCode) -> bytes:
        """Encode the reply for this request's protocol version"""
        if self.version == SOCKS4_VERSION:
            status = SOCKS4_GRANTED if code is ReplyCode.SUCCESS else SOCKS4_REJECTED
            return struct.pack('!BBH4s', 0, status, 0, b'\x00\x00\x00\x00')
        return encode_socks5_reply(code)


def encode_socks5_reply(code: ReplyCode) -> bytes:
    # Bound address is not meaningful for a forwarded channel
    return struct.pack('!BBBB4sH', SOCKS5_VERSION, code.value, 0, AddressType.IPV4.value,
                       b'\x00\x00\x00\x00', 0)


async def _read_until_nul(reader: asyncio.StreamReader) -> bytes:
    data = await reader.readuntil(b'\x00')
    return data[:-1]


def _decode_host(raw: bytes) -> str:
    try:
        return raw.decode('idna')
    except UnicodeError as e:
        raise SocksError(f"Invalid host name {raw!r}: {e}")


async def _read_socks4(reader: asyncio.StreamReader) -> SocksRequest:
    command, port, address = struct.unpack('!BH4s', await reader.readexactly(7))
    await _read_until_nul(reader)  # user id, ignored

    if command != Command.CONNECT.value:
        raise SocksError(f"Unsupported SOCKS4 command {command}", ReplyCode.COMMAND_NOT_SUPPORTED)

    # SOCKS4a: 0.0.0.x means the host name follows the user id
    if address[:3] == b'\x00\x00\x00' and address[3] != 0:
        host = _decode_host(await _read_until_nul(reader))
    else:
        host = socket.inet_ntop(socket.AF_INET, address)

    return SocksRequest(SOCKS4_VERSION, host, port)


async def _read_socks5(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> SocksRequest:
    nmethods = (await reader.readexactly(1))[0]
    methods = await reader.readexactly(nmethods)

    if NO_AUTH not in methods:
        writer.write(struct.pack('!BB', SOCKS5_VERSION, NO_ACCEPTABLE_METHODS))
        await writer.drain()
        raise SocksError("Client offered no acceptable authentication method")

    writer.write(struct.pack('!BB', SOCKS5_VERSION, NO_AUTH))
    await writer.drain()

    try:
        return await _read_socks5_request(reader)
    except SocksError as e:
        writer.write(encode_socks5_reply(e.reply_code))
        await writer.drain()
        raise


async def _read_socks5_request(reader: asyncio.StreamReader) -> SocksRequest:
    version, command, _, address_type = struct.unpack('!BBBB', await reader.readexactly(4))
    if version != SOCKS5_VERSION:
        raise SocksError(f"Unexpected SOCKS version {version} in request")

    if address_type == AddressType.IPV4.value:
        host = socket.inet_ntop(socket.AF_INET, await reader.readexactly(4))
    elif address_type == AddressType.DOMAIN.value:
        length = (await reader.readexactly(1))[0]
        host = _decode_host(await reader.readexactly(length))
    elif address_type == AddressType.IPV6.value:
        host = socket.inet_ntop(socket.AF_INET6, await reader.readexactly(16))
    else:
        raise SocksError(f"Unsupported address type {address_type}", ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED)

    port = struct.unpack('!H', await reader.readexactly(2))[0]

    if command != Command.CONNECT.value:
        raise SocksError(f"Unsupported SOCKS5 command {command}", ReplyCode.COMMAND_NOT_SUPPORTED)

    return SocksRequest(SOCKS5_VERSION, host, port)


async def read_request(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> SocksRequest:
    """
    Run the server side of the handshake up to the CONNECT request.

    On a malformed or unsupported request the matching failure reply is sent
    before SocksError is raised.
    """
    version = (await reader.readexactly(1))[0]

    if version == SOCKS4_VERSION:
        try:
            return await _read_socks4(reader)
        except SocksError:
            writer.write(SocksRequest(SOCKS4_VERSION, "", 0).reply(ReplyCode.GENERAL_FAILURE))
            await writer.drain()
            raise

    if version == SOCKS5_VERSION:
        return await _read_socks5(reader, writer)

    raise SocksError(f"Unknown SOCKS version {version}")
