# src/modules/scheduling/services/rcon_service.py

"""
Pushes match configuration to a game server over the Source RCON protocol.

Packets are framed by a little-endian int32 length, followed by the request id,
the packet type and a null terminated body plus an empty null terminated string:

    <length:int32> <request_id:int32> <type:int32> <body> \\x00 \\x00

Clients send SERVERDATA_AUTH (3) once, then SERVERDATA_EXECCOMMAND (2) packets.
The server answers the auth packet with SERVERDATA_AUTH_RESPONSE (2), whose
request id is -1 when the password was wrong. Command output arrives as
SERVERDATA_RESPONSE_VALUE (0).
"""

import asyncio
import logging
import struct
from dataclasses import dataclass
from typing import Optional

from src.core.errors import ConfigurationFailed
from src.core.utils import RetryPolicy, retry_with_backoff, with_deadline

logger = logging.getLogger(__name__)

SERVERDATA_AUTH = 3
SERVERDATA_EXECCOMMAND = 2
SERVERDATA_AUTH_RESPONSE = 2
SERVERDATA_RESPONSE_VALUE = 0

DEFAULT_PORT = 27015
MAX_PACKET_SIZE = 4096 + 10


class RconAuthError(Exception):
    pass


class RconProtocolError(Exception):
    pass


def encode_packet(request_id: int, packet_type: int, body: str) -> bytes:
    payload = body.encode('utf-8')
    if b'\x00' in payload:
        raise ValueError('rcon body must not contain null bytes')
    packet = struct.pack('<2i', request_id, packet_type) + payload + b'\x00\x00'
    return struct.pack('<i', len(packet)) + packet


async def read_packet(reader: asyncio.StreamReader) -> tuple[int, int, str]:
    header = await reader.readexactly(4)
    (length,) = struct.unpack('<i', header)
    if length < 10 or length > MAX_PACKET_SIZE:
        raise RconProtocolError(f'invalid packet length {length}')
    data = await reader.readexactly(length)
    request_id, packet_type = struct.unpack('<2i', data[:8])
    body, sep, _ = data[8:].partition(b'\x00')
    if not sep:
        raise RconProtocolError('unterminated packet body')
    return request_id, packet_type, body.decode('utf-8', errors='replace')


def split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(':')
    if not sep:
        return address, DEFAULT_PORT
    return host, int(port)


def quote(value: str) -> str:
    return '"' + value.replace('"', '') + '"'


class RconConnection:
    """A single authenticated connection; not shared between configuration attempts."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self._next_id = 1

    @classmethod
    async def open(cls, address: str, password: str, timeout: float) -> "RconConnection":
        host, port = split_address(address)
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        conn = cls(reader, writer)
        try:
            await asyncio.wait_for(conn._authenticate(password), timeout=timeout)
        except BaseException:
            await conn.close()
            raise
        return conn

    def _request_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    async def _authenticate(self, password: str):
        request_id = self._request_id()
        self.writer.write(encode_packet(request_id, SERVERDATA_AUTH, password))
        await self.writer.drain()
        # Source servers send an empty RESPONSE_VALUE before the AUTH_RESPONSE.
        while True:
            response_id, packet_type, _ = await read_packet(self.reader)
            if packet_type == SERVERDATA_AUTH_RESPONSE:
                break
        if response_id == -1:
            raise RconAuthError('rcon password rejected')
        if response_id != request_id:
            raise RconProtocolError(f'auth response id {response_id} does not match {request_id}')

    async def command(self, command: str, timeout: float) -> str:
        request_id = self._request_id()
        self.writer.write(encode_packet(request_id, SERVERDATA_EXECCOMMAND, command))
        await self.writer.drain()

        async def _read_response():
            while True:
                response_id, packet_type, body = await read_packet(self.reader)
                if response_id == request_id and packet_type == SERVERDATA_RESPONSE_VALUE:
                    return body

        return await asyncio.wait_for(_read_response(), timeout=timeout)

    async def close(self):
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


@dataclass(frozen=True)
class Ack:
    """What the server answered to each configuration command."""
    address: str
    map_name: Optional[str]
    responses: tuple[tuple[str, str], ...]


_TRANSIENT = (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, RconAuthError, RconProtocolError)


class RconConfigurator:
    """
    Sends the fixed configuration sequence to a server.
    The sequence only sets absolute values, so sending it twice yields the same server state.
    """

    def __init__(self, retry_policy: RetryPolicy = RetryPolicy(base_delay=2.0), timeout: float = 10.0):
        self.retry_policy = retry_policy
        self.timeout = timeout

    @staticmethod
    def build_commands(map_name: Optional[str], match_password: Optional[str],
                       hostname: Optional[str] = None, server_config: Optional[str] = None) -> list[str]:
        commands = []
        if match_password is not None:
            commands.append(f"sv_password {quote(match_password)}")
        if hostname:
            commands.append(f"hostname {quote(hostname)}")
        if server_config:
            commands.append(f"exec {server_config}")
        # changelevel reloads the server, so it goes last
        if map_name:
            commands.append(f"changelevel {map_name}")
        return commands

    async def _push(self, address: str, credentials: str, commands: list[str]) -> tuple[tuple[str, str], ...]:
        conn = await RconConnection.open(address, credentials, self.timeout)
        try:
            responses = []
            for command in commands:
                responses.append((command, await conn.command(command, self.timeout)))
            return tuple(responses)
        finally:
            await conn.close()

    async def configure(
        self,
        server_address: str,
        credentials: str,
        map_name: Optional[str],
        match_password: Optional[str],
        hostname: Optional[str] = None,
        server_config: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> Ack:
        commands = self.build_commands(map_name, match_password, hostname, server_config)
        log_context = {'server': server_address, 'map': map_name, 'commands': len(commands)}
        try:
            responses = await with_deadline(
                retry_with_backoff(
                    lambda: self._push(server_address, credentials, commands),
                    f"rcon configure {server_address}",
                    self.retry_policy,
                    _TRANSIENT,
                ),
                deadline
            )
        except _TRANSIENT as e:
            logger.warning("Server configuration failed", extra={**log_context, 'error': repr(e)})
            raise ConfigurationFailed(f"could not configure {server_address}: {e!r}") from e
        except ValueError as e:
            raise ConfigurationFailed(f"bad server address or command for {server_address}: {e}") from e

        logger.info("Server configured", extra=log_context)
        return Ack(address=server_address, map_name=map_name, responses=responses)

    async def execute(self, server_address: str, credentials: str, command: str,
                      deadline: Optional[float] = None) -> str:
        """Runs one operator command and returns the server's reply. Sent once, never retried."""
        verb = command.split(' ', 1)[0]
        try:
            responses = await with_deadline(self._push(server_address, credentials, [command]), deadline)
        except _TRANSIENT as e:
            logger.warning("Rcon command failed", extra={'server': server_address, 'command': verb, 'error': repr(e)})
            raise ConfigurationFailed(f"could not run {verb!r} on {server_address}: {e!r}") from e
        except ValueError as e:
            raise ConfigurationFailed(f"bad server address or command for {server_address}: {e}") from e

        logger.info("Rcon command sent", extra={'server': server_address, 'command': verb})
        return responses[0][1]
