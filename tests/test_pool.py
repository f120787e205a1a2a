import base64
import hashlib
import os
import queue
import socket
import struct
import threading
import time

import httpx
import pytest
import respx
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from tonlite.liteclient.config import (
    GlobalConfig,
    LiteserverConfig,
    NoConnectionsError,
    ServerID,
)
from tonlite.liteclient.crypto import key_id, new_cipher_ctr, shared_key
from tonlite.liteclient.parse import (
    ADNL_QUERY,
    ADNL_QUERY_RESPONSE,
    LITE_SERVER_QUERY,
    TCP_PING,
    TCP_PONG,
)
from tonlite.liteclient.pool import (
    ConnectionPool,
    LiteResponse,
    NoActiveConnectionsError,
)
from tonlite.tl import to_bytes, unmarshal

LOCALHOST_IP = int.from_bytes(socket.inet_aton("127.0.0.1"), "big")
BLOCK_INFO_TYPE = -1984567762


def _recv_exact(sock, size, cipher=None):
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            raise ConnectionError("closed")
        buf += chunk
    data = bytes(buf)
    return cipher.update(data) if cipher is not None else data


class FakeLiteServer:
    def __init__(self, respond=True):
        self._private = Ed25519PrivateKey.generate()
        self.public = self._private.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw
        )
        self.key_b64 = base64.b64encode(self.public).decode()
        self.respond = respond
        self.queries = queue.Queue()
        self.pings = queue.Queue()
        self.handshakes = queue.Queue()
        self._clients = []
        self._lock = threading.Lock()
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen()
        self.port = self._listener.getsockname()[1]
        self.addr = f"127.0.0.1:{self.port}"
        threading.Thread(target=self._accept_loop, daemon=True).start()

    def _accept_loop(self):
        while True:
            try:
                conn, _ = self._listener.accept()
            except OSError:
                return
            with self._lock:
                self._clients.append(conn)
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    def _serve(self, conn):
        try:
            self._session(conn)
        except (OSError, ValueError):
            pass
        finally:
            conn.close()

    def _session(self, conn):
        header = _recv_exact(conn, 96)
        kid, client_pub, checksum = header[:32], header[32:64], header[64:96]
        encrypted = _recv_exact(conn, 160)
        if kid != key_id(self.public):
            return
        secret = shared_key(self._private, client_pub)
        rnd = new_cipher_ctr(
            secret[:16] + checksum[16:32], checksum[:4] + secret[20:32]
        ).update(encrypted)
        if hashlib.sha256(rnd).digest() != checksum:
            return
        self.handshakes.put(client_pub)

        send_cipher = new_cipher_ctr(rnd[:32], rnd[64:80])
        recv_cipher = new_cipher_ctr(rnd[32:64], rnd[80:96])

        def send(payload):
            body = os.urandom(32) + payload
            packet = (
                struct.pack("<I", len(body) + 32) + body + hashlib.sha256(body).digest()
            )
            conn.sendall(send_cipher.update(packet))

        send(b"")
        while True:
            size = struct.unpack("<I", _recv_exact(conn, 4, recv_cipher))[0]
            data = _recv_exact(conn, size, recv_cipher)
            body = data[:-32]
            if hashlib.sha256(body).digest() != data[-32:]:
                return
            message = body[32:]
            kind = struct.unpack_from("<i", message)[0]
            if kind == TCP_PING:
                self.pings.put(message[4:12])
                send(struct.pack("<i", TCP_PONG) + message[4:12])
            elif kind == ADNL_QUERY:
                query_id = message[4:36]
                inner = unmarshal(message[36:], bytes)
                if struct.unpack_from("<i", inner)[0] != LITE_SERVER_QUERY:
                    return
                request = unmarshal(inner[4:], bytes)
                type_id = struct.unpack_from("<i", request)[0]
                payload = request[4:]
                self.queries.put((type_id, payload))
                if self.respond:
                    send(
                        struct.pack("<i", ADNL_QUERY_RESPONSE)
                        + query_id
                        + to_bytes(struct.pack("<i", type_id) + payload)
                    )

    def drop_clients(self):
        with self._lock:
            clients, self._clients = self._clients, []
        for client in clients:
            try:
                client.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            client.close()

    def close(self):
        try:
            self._listener.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._listener.close()
        self.drop_clients()


def _closed_port():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def server():
    srv = FakeLiteServer()
    yield srv
    srv.close()


@pytest.fixture
def second_server():
    srv = FakeLiteServer()
    yield srv
    srv.close()


@pytest.fixture
def pool():
    p = ConnectionPool()
    p.set_on_disconnect(None)
    yield p
    p.close()


def test_do_round_trip(server, pool):
    pool.add_connection(server.addr, server.key_b64, timeout=5)
    resp = pool.do(BLOCK_INFO_TYPE, b"\x01\x02\x03", timeout=5)
    assert resp == LiteResponse(BLOCK_INFO_TYPE, b"\x01\x02\x03")
    assert server.queries.get(timeout=5) == (BLOCK_INFO_TYPE, b"\x01\x02\x03")


def test_do_with_empty_payload(server, pool):
    pool.add_connection(server.addr, server.key_b64, timeout=5)
    resp = pool.do(BLOCK_INFO_TYPE, timeout=5)
    assert resp.type_id == BLOCK_INFO_TYPE
    assert resp.data == b""


def test_large_payload_round_trip(server, pool):
    pool.add_connection(server.addr, server.key_b64, timeout=5)
    payload = bytes(i % 256 for i in range(1217))
    resp = pool.do(7, payload, timeout=5)
    assert resp.data == payload
    assert server.queries.get(timeout=5) == (7, payload)


def test_do_without_connections(pool):
    with pytest.raises(NoActiveConnectionsError):
        pool.do(BLOCK_INFO_TYPE, b"")


def test_do_timeout_reports_node(pool):
    silent = FakeLiteServer(respond=False)
    try:
        pool.add_connection(silent.addr, silent.key_b64, timeout=5)
        with pytest.raises(TimeoutError, match="deadline exceeded"):
            pool.do(1, b"x", timeout=0.2)
        assert silent.queries.get(timeout=5) == (1, b"x")
    finally:
        silent.close()


def test_sticky_node_without_connections(pool):
    assert pool.sticky_node() == 0


def test_sticky_routes_to_one_node(server, second_server, pool):
    pool.add_connection(server.addr, server.key_b64, timeout=5)
    pool.add_connection(second_server.addr, second_server.key_b64, timeout=5)
    sticky_id = pool.sticky_node()
    assert sticky_id > 0
    for i in range(4):
        assert pool.do(5, bytes([i]), sticky_id=sticky_id, timeout=5).data == bytes([i])
    assert sorted([server.queries.qsize(), second_server.queries.qsize()]) == [0, 4]


def test_balancer_alternates_nodes(server, second_server, pool):
    pool.add_connection(server.addr, server.key_b64, timeout=5)
    pool.add_connection(second_server.addr, second_server.key_b64, timeout=5)
    for i in range(4):
        assert pool.do(5, bytes([i]), timeout=5).data == bytes([i])
    assert server.queries.qsize() == 2
    assert second_server.queries.qsize() == 2


def test_invalid_server_key(server, pool):
    with pytest.raises(ValueError):
        pool.add_connection(server.addr, "not base64!!", timeout=5)


def test_server_key_wrong_length(server, pool):
    short_key = base64.b64encode(bytes(16)).decode()
    with pytest.raises(ValueError, match="32 bytes"):
        pool.add_connection(server.addr, short_key, timeout=5)


def test_connection_refused(pool):
    with pytest.raises(OSError):
        pool.add_connection(f"127.0.0.1:{_closed_port()}", base64.b64encode(bytes(32)).decode(), timeout=2)


def test_missing_port(pool):
    with pytest.raises(ValueError, match="missing port"):
        pool.add_connection("localhost", base64.b64encode(bytes(32)).decode(), timeout=2)


def test_pings_are_sent(server):
    with ConnectionPool(ping_interval=0.05) as p:
        p.set_on_disconnect(None)
        p.add_connection(server.addr, server.key_b64, timeout=5)
        ping_id = server.pings.get(timeout=5)
        assert len(ping_id) == 8


def test_disconnect_callback(server, pool):
    events = queue.Queue()
    pool.set_on_disconnect(lambda addr, key: events.put((addr, key)))
    pool.add_connection(server.addr, server.key_b64, timeout=5)
    server.handshakes.get(timeout=5)
    server.drop_clients()
    assert events.get(timeout=5) == (server.addr, server.key_b64)
    with pytest.raises(NoActiveConnectionsError):
        pool.do(1, b"")


def test_default_reconnect_restores_connection(server):
    with ConnectionPool() as p:
        p.set_on_disconnect(p.default_reconnect(0.05, 5))
        p.add_connection(server.addr, server.key_b64, timeout=5)
        first = server.handshakes.get(timeout=5)
        server.drop_clients()
        second = server.handshakes.get(timeout=10)
        assert second != first

        deadline = time.monotonic() + 10
        response = None
        while response is None and time.monotonic() < deadline:
            try:
                response = p.do(3, b"again", timeout=5)
            except NoActiveConnectionsError:
                time.sleep(0.05)
        assert response == LiteResponse(3, b"again")


def test_close_stops_requests_and_callbacks(server, pool):
    events = queue.Queue()
    pool.set_on_disconnect(lambda addr, key: events.put((addr, key)))
    pool.add_connection(server.addr, server.key_b64, timeout=5)
    pool.close()
    with pytest.raises(NoActiveConnectionsError):
        pool.do(1, b"")
    with pytest.raises(queue.Empty):
        events.get(timeout=0.3)


def test_config_without_servers(pool):
    with pytest.raises(NoConnectionsError):
        pool.add_connections_from_config(GlobalConfig(), timeout=1)


def test_config_first_success_wins(server, pool):
    config = GlobalConfig(
        liteservers=[
            LiteserverConfig(ip=LOCALHOST_IP, port=_closed_port(), id=ServerID(key=server.key_b64)),
            LiteserverConfig(ip=LOCALHOST_IP, port=server.port, id=ServerID(key=server.key_b64)),
        ]
    )
    pool.add_connections_from_config(config, timeout=5)
    assert pool.do(9, b"cfg", timeout=5).data == b"cfg"


def test_config_all_fail(pool):
    key = base64.b64encode(bytes(32)).decode()
    config = GlobalConfig(
        liteservers=[
            LiteserverConfig(ip=LOCALHOST_IP, port=_closed_port(), id=ServerID(key=key)),
            LiteserverConfig(ip=LOCALHOST_IP, port=_closed_port(), id=ServerID(key=key)),
        ]
    )
    with pytest.raises(OSError):
        pool.add_connections_from_config(config, timeout=2)


def test_config_from_url(server, pool):
    url = "http://config.example.com/global.config.json"
    document = {
        "liteservers": [
            {
                "ip": LOCALHOST_IP,
                "port": server.port,
                "id": {"@type": "pub.ed25519", "key": server.key_b64},
            }
        ]
    }
    with respx.mock:
        respx.get(url).mock(return_value=httpx.Response(200, json=document))
        pool.add_connections_from_config_url(url, timeout=5)
    assert pool.do(11, b"url", timeout=5) == LiteResponse(11, b"url")