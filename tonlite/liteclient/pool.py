"""Pool of encrypted lite server connections with load balancing and reconnects."""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
import queue
import random
import secrets
import socket
import struct
import threading
import time
import zlib
from dataclasses import dataclass, field
from typing import Callable, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from tonlite.liteclient.config import (
    GlobalConfig,
    NoConnectionsError,
    get_config_from_url,
    int_to_ip4,
)
from tonlite.liteclient.crypto import (
    PacketError,
    key_id,
    new_cipher_ctr,
    shared_key,
    validate_packet,
)
from tonlite.liteclient.parse import (
    ADNL_QUERY,
    LITE_SERVER_QUERY,
    TCP_PING,
    ServerResponse,
    parse_server_resp,
)
from tonlite.tl import to_bytes

OnDisconnectCallback = Callable[[str, str], None]

_MAX_PACKET_SIZE = 10 << 20
_DEFAULT_REQUEST_TIMEOUT = 30.0
_DEFAULT_CONNECT_TIMEOUT = 60.0
_DEFAULT_CONFIG_CONNECT_TIMEOUT = 3.0
_RECONNECT_TIMEOUT = 7.0


class NoActiveConnectionsError(Exception):
    """Raised when no connected lite server can take a request."""

    def __init__(self, message: str = "no active connections") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class LiteResponse:
    type_id: int
    data: bytes


@dataclass
class LiteRequest:
    type_id: int
    query_id: bytes
    data: bytes
    responses: queue.Queue = field(
        default_factory=lambda: queue.Queue(maxsize=1), repr=False, compare=False
    )


def _split_host_port(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep or not host:
        raise ValueError(f"missing port in address: {addr}")
    return host.strip("[]"), int(port)


def _handshake(
    sock: socket.socket, rnd: bytes, our_key: Ed25519PrivateKey, server_key: bytes
) -> None:
    checksum = hashlib.sha256(rnd).digest()
    public = our_key.public_key().public_bytes(
        serialization.Encoding.Raw, serialization.PublicFormat.Raw
    )
    kid = key_id(server_key)
    secret = shared_key(our_key, server_key)

    key = secret[:16] + checksum[16:32]
    iv = checksum[:4] + secret[20:32]
    encrypted = new_cipher_ctr(key, iv).update(rnd)

    sock.sendall(kid + public + checksum + encrypted)


class _Connection:
    """One encrypted link to a lite server."""

    def __init__(
        self,
        pool: ConnectionPool,
        addr: str,
        server_key: str,
        sock: socket.socket,
        rnd: bytes,
    ) -> None:
        self.id = zlib.crc32(server_key.encode())
        self.addr = addr
        self.server_key = server_key
        self._pool = pool
        self._sock = sock
        self._r_cipher = new_cipher_ctr(rnd[:32], rnd[64:80])
        self._w_cipher = new_cipher_ctr(rnd[32:64], rnd[80:96])
        self._write_lock = threading.Lock()
        self.stopped = threading.Event()

    def close(self) -> None:
        self.stopped.set()
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()

    def _recv_exact(self, size: int) -> bytes:
        buf = bytearray()
        while len(buf) < size:
            chunk = self._sock.recv(size - len(buf))
            if not chunk:
                raise ConnectionError("connection closed by peer")
            buf += self._r_cipher.update(chunk)
        return bytes(buf)

    def _read_size(self) -> int:
        raw = self._recv_exact(4)
        size = int.from_bytes(raw, "little")
        if size > _MAX_PACKET_SIZE:
            raise PacketError(f"too big size of packet: {raw.hex()}")
        return size

    def _read_response(self) -> Optional[ServerResponse]:
        size = self._read_size()
        if size <= 32:
            raise PacketError("too small size of packet")
        data = self._recv_exact(size)
        body, checksum = data[:-32], data[-32:]
        validate_packet(body, checksum)
        body = body[32:]
        if not body:
            return None
        return parse_server_resp(body)

    def listen(self, result: queue.Queue) -> None:
        initialized = False
        error: BaseException
        while True:
            try:
                response = self._read_response()
            except Exception as exc:
                error = exc
                break
            if response is None:
                if not initialized:
                    initialized = True
                    result.put(None)
                continue
            self._pool._dispatch(response)

        self.close()
        result.put(error)
        if initialized:
            self._pool._deactivate(self)

    def ping_loop(self, every: float) -> None:
        while not self.stopped.wait(every):
            try:
                self.ping(secrets.randbelow(0xFFFFFFFFFFFFFF))
            except OSError:
                self.close()
                break

    def send(self, data: bytes) -> None:
        body = os.urandom(32) + data
        packet = struct.pack("<I", len(body) + 32) + body + hashlib.sha256(body).digest()
        with self._write_lock:
            self._sock.sendall(self._w_cipher.update(packet))

    def ping(self, query_id: int) -> None:
        self.send(struct.pack("<IQ", TCP_PING & 0xFFFFFFFF, query_id))

    def query_adnl(self, query_id: bytes, payload: bytes) -> None:
        self.send(struct.pack("<I", ADNL_QUERY & 0xFFFFFFFF) + query_id + to_bytes(payload))

    def query_lite_server(self, query_id: bytes, type_id: int, payload: bytes) -> str:
        inner = struct.pack("<I", type_id & 0xFFFFFFFF) + payload
        data = struct.pack("<I", LITE_SERVER_QUERY & 0xFFFFFFFF) + to_bytes(inner)
        self.query_adnl(query_id, data)
        return self.addr


class ConnectionPool:
    """Lite server connections shared by requests, balanced round robin."""

    def __init__(self, ping_interval: float = 5.0) -> None:
        self._ping_interval = ping_interval
        self._active_reqs: dict[str, LiteRequest] = {}
        self._nodes: list[_Connection] = []
        self._req_lock = threading.Lock()
        self._nodes_lock = threading.Lock()
        self._offset_lock = threading.Lock()
        self._round_robin_offset = 0
        self._on_disconnect: Optional[OnDisconnectCallback] = None
        self._closed = False
        self.set_on_disconnect(self.default_reconnect(3.0, -1))

    def __enter__(self) -> ConnectionPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def add_connections_from_config(
        self, config: GlobalConfig, timeout: Optional[float] = None
    ) -> None:
        """Connect to every listed server; return on the first success, raise if all fail."""
        servers = list(config.liteservers)
        if not servers:
            raise NoConnectionsError()

        per_connection = _DEFAULT_CONFIG_CONNECT_TIMEOUT if timeout is None else timeout
        results: queue.Queue = queue.Queue()
        fails = 0
        fails_lock = threading.Lock()

        def connect(server) -> None:
            nonlocal fails
            addr = f"{int_to_ip4(server.ip)}:{server.port}"
            try:
                self.add_connection(addr, server.id.key, per_connection)
            except Exception as exc:
                with fails_lock:
                    fails += 1
                    everything_failed = fails == len(servers)
                if everything_failed:
                    results.put(exc)
            else:
                results.put(None)

        for server in servers:
            threading.Thread(target=connect, args=(server,), daemon=True).start()

        error = results.get()
        if error is not None:
            raise error

    def add_connections_from_config_url(
        self, url: str, timeout: Optional[float] = None
    ) -> None:
        """Download a global configuration and connect to its lite servers."""
        if timeout is None:
            config = get_config_from_url(url)
        else:
            config = get_config_from_url(url, timeout)
        self.add_connections_from_config(config, timeout)

    def add_connection(
        self, addr: str, server_key: str, timeout: Optional[float] = None
    ) -> None:
        """Connect to one lite server given as host:port and its base64 public key."""
        try:
            server_pub = base64.b64decode(server_key, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"invalid server key: {exc}") from exc

        private_key = Ed25519PrivateKey.generate()
        deadline = time.monotonic() + (
            _DEFAULT_CONNECT_TIMEOUT if timeout is None else timeout
        )
        host, port = _split_host_port(addr)
        sock = socket.create_connection(
            (host, port), timeout=max(deadline - time.monotonic(), 0.001)
        )

        try:
            rnd = os.urandom(160)
            conn = _Connection(self, addr, server_key, sock, rnd)
            _handshake(sock, rnd, private_key, server_pub)
            sock.settimeout(None)
        except BaseException:
            sock.close()
            raise

        result: queue.Queue = queue.Queue()
        threading.Thread(target=conn.listen, args=(result,), daemon=True).start()

        try:
            error = result.get(timeout=max(deadline - time.monotonic(), 0.0))
        except queue.Empty:
            conn.close()
            raise TimeoutError(f"handshake with {addr} timed out") from None
        if error is not None:
            raise error

        with self._nodes_lock:
            if conn.stopped.is_set():
                raise ConnectionError(f"connection to {addr} closed right after handshake")
            if self._closed:
                conn.close()
                raise ConnectionError("connection pool is closed")
            self._nodes.append(conn)

        threading.Thread(
            target=conn.ping_loop, args=(self._ping_interval,), daemon=True
        ).start()

    def sticky_node(self) -> int:
        """Pick a random connected node id to bind related requests to, or 0 if none."""
        with self._nodes_lock:
            if not self._nodes:
                return 0
            return random.choice(self._nodes).id

    def do(
        self,
        type_id: int,
        payload: bytes = b"",
        sticky_id: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> LiteResponse:
        """Send a lite server query and wait for its response."""
        query_id = os.urandom(32)
        request = LiteRequest(type_id, query_id, bytes(payload or b""))
        hex_id = query_id.hex()

        with self._req_lock:
            self._active_reqs[hex_id] = request
        try:
            if sticky_id:
                host = self._query_sticky(sticky_id, request)
            else:
                host = self._query_with_balancer(request)

            wait = _DEFAULT_REQUEST_TIMEOUT if timeout is None else timeout
            try:
                return request.responses.get(timeout=wait)
            except queue.Empty:
                if timeout is None:
                    raise TimeoutError(f"liteserver request timeout, node {host}") from None
                raise TimeoutError(f"deadline exceeded, node {host}") from None
        finally:
            with self._req_lock:
                self._active_reqs.pop(hex_id, None)

    def _query_sticky(self, node_id: int, request: LiteRequest) -> str:
        with self._nodes_lock:
            node = next((n for n in self._nodes if n.id == node_id), None)
        if node is not None:
            try:
                return node.query_lite_server(request.query_id, request.type_id, request.data)
            except OSError:
                pass
        return self._query_with_balancer(request)

    def _query_with_balancer(self, request: LiteRequest) -> str:
        with self._offset_lock:
            self._round_robin_offset += 1
            offset = self._round_robin_offset

        first_node: Optional[_Connection] = None
        while True:
            with self._nodes_lock:
                if not self._nodes:
                    raise NoActiveConnectionsError()
                node = self._nodes[offset % len(self._nodes)]

            if first_node is None:
                first_node = node
            elif node is first_node:
                raise NoActiveConnectionsError()

            try:
                return node.query_lite_server(request.query_id, request.type_id, request.data)
            except OSError:
                offset += 1

    def _dispatch(self, response: ServerResponse) -> None:
        with self._req_lock:
            request = self._active_reqs.get(response.query_id)
        if request is None:
            return
        try:
            request.responses.put_nowait(LiteResponse(response.type_id, response.payload))
        except queue.Full:
            pass

    def _deactivate(self, conn: _Connection) -> None:
        with self._nodes_lock:
            if conn in self._nodes:
                self._nodes.remove(conn)
            closed = self._closed
        with self._req_lock:
            callback = self._on_disconnect
        if callback is not None and not closed:
            threading.Thread(
                target=callback, args=(conn.addr, conn.server_key), daemon=True
            ).start()

    def default_reconnect(
        self, wait_before_reconnect: float = 3.0, max_tries: int = -1
    ) -> OnDisconnectCallback:
        """Build a callback that reconnects to a dropped server; -1 tries forever."""
        tries = 0

        def reconnect(addr: str, key: str) -> None:
            nonlocal tries
            while not self._closed:
                try:
                    self.add_connection(addr, key, _RECONNECT_TIMEOUT)
                except Exception:
                    if tries < max_tries or max_tries == -1:
                        tries += 1
                        time.sleep(wait_before_reconnect)
                        continue
                break
            tries = 0

        return reconnect

    def set_on_disconnect(self, callback: Optional[OnDisconnectCallback]) -> None:
        with self._req_lock:
            self._on_disconnect = callback

    def close(self) -> None:
        """Drop every connection and stop reconnecting."""
        with self._nodes_lock:
            self._closed = True
            nodes = list(self._nodes)
            self._nodes.clear()
        for node in nodes:
            node.close()