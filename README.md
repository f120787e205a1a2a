# tonlite

A small client library for talking to TON lite-servers. It has these parts:

- `tonlite.address`: parsing and formatting of user-friendly account addresses
  (base64url with a CRC16-XMODEM checksum), including the bounceable and
  testnet-only flags.
- `tonlite.tl`: the TL binary serialization used by lite-server queries:
  little-endian integers and length-prefixed byte strings padded to 4 bytes.
- `tonlite.liteclient.config`: the global network configuration (lite-servers,
  DHT nodes, validator data), built from a dict or fetched over HTTP.
- `tonlite.liteclient.crypto` and `tonlite.liteclient.parse`: the handshake
  key derivation, AES-CTR packet ciphers, checksum checks and decoding of
  server packets.
- `tonlite.liteclient.pool`: a thread-based pool of encrypted ADNL connections
  to lite-servers, with round-robin balancing, sticky routing, keep-alive pings
  and automatic reconnection.

## Installation

```
pip install .
```

To run the test suite, install the `test` extra and run `pytest`:

```
pip install ".[test]"
pytest
```

## Addresses

```python
from tonlite.address import parse_addr, new_address, AddressError

addr = parse_addr("EQC6KV4zs8TJtSZapOrRFmqSkxzpq-oSCoxekQRKElf4nC1I")
print(addr.dump())
# human-readable address: EQC6KV4zs8TJtSZapOrRFmqSkxzpq-oSCoxekQRKElf4nC1I isBounceable: true, isTestnetOnly: false, data.len: 32

print(addr.checksum())   # 11592
print(str(addr))         # the same string it was parsed from
print(addr.to_json())    # the string in JSON quotes

zero = new_address(0x11, 0, bytes(32))
print(zero.flags_to_byte())  # 17

try:
    parse_addr("EQCTDVUzmAq6EfzYGEWpVOv16yo-H5Vw3B0rktcidz_ULOUB")
except AddressError as exc:
    print("rejected:", exc)
```

`Address` is a dataclass with `addr_type` (an `AddrType`), `workchain`,
`bits_len`, `data`, `bounceable` and `testnet`; the flags can be changed by
assigning to the fields. Besides `new_address` there are `new_address_var`,
`new_address_ext` and `new_address_none`. A string that is not valid base64url,
has the wrong length or a bad checksum raises `AddressError`. The bit helpers
`set_bit`, `clear_bit`, `has_bit` and `parse_flags` work on single flag bytes.

## TL serialization

```python
from dataclasses import dataclass
from tonlite.tl import Int32, UInt64, marshal, unmarshal, to_bytes, encode_length

to_bytes(b"\xff\xaa")        # b"\x02\xff\xaa\x00"
encode_length(1217)          # b"\xfe\xc1\x04\x00"

@dataclass
class Query:
    mode: Int32
    lt: UInt64
    body: bytes

raw = marshal(Query(Int32(-1), UInt64(42), b"\x01"))
assert unmarshal(raw, Query) == Query(-1, 42, b"\x01")
```

`marshal` accepts the `Int32`, `Int64`, `UInt32` and `UInt64` integer types,
byte strings, dataclasses made of those (fields are encoded in order, plain
ints are converted to the annotated type), and any object with a `marshal_tl()`
method. `unmarshal(data, cls)` decodes into the given type. Values out of range
and types that cannot be handled raise `TLError`.

## Network configuration

```python
from tonlite.liteclient.config import GlobalConfig, int_to_ip4

config = GlobalConfig.from_dict({
    "liteservers": [
        {"ip": 1, "port": 2, "id": {"@type": "pub.ed25519", "key": "placeholder"}},
    ],
})
server = config.liteservers[0]
print(int_to_ip4(server.ip), server.port)   # 0.0.0.1 2
```

Fields missing from the dict take empty or zero values.
`get_config_from_url(url, timeout=30.0)` downloads a configuration file, for
example from `https://config.example.com/global.json`, and decodes it the same
way.

## Connection pool

`ConnectionPool(ping_interval=5.0)` keeps encrypted connections to one or more
lite-servers. It can be used as a context manager, which closes it on exit.

- `add_connection(addr, server_key, timeout=None)` connects to one server given
  as `"host:port"` and its base64 ed25519 public key (60 seconds by default).
- `add_connections_from_config(config, timeout=None)` and
  `add_connections_from_config_url(url, timeout=None)` connect to every server
  in a configuration in parallel (3 seconds each by default) and return once the
  first one is up; if none can be reached the error of the last failure is
  raised, and an empty server list raises `NoConnectionsError`.
- `do(type_id, payload=b"", sticky_id=None, timeout=None)` sends a lite-server
  query and returns a `LiteResponse` with `type_id` and `data`. Queries are
  spread round-robin across the live connections; when no connection is usable
  `NoActiveConnectionsError` is raised, and with no answer in time (30 seconds
  by default) `TimeoutError`.
- `sticky_node()` returns the id of a random live connection, or 0 if there is
  none; passing it as `sticky_id` routes related queries to the same server,
  falling back to the balancer if that server has gone away.
- `set_on_disconnect(callback)` installs what runs, with the address and key,
  when a connection drops; `None` turns it off. By default the pool uses
  `default_reconnect(wait_before_reconnect=3.0, max_tries=-1)`, which retries
  the connection, waiting between attempts, with no limit when `max_tries` is -1.
- `close()` shuts down every connection and stops reconnecting.

## What the package does not do

The pool carries queries and answers as raw bytes: the package does not build
lite-server requests for blocks, accounts, transactions or get-methods, and
does not decode their answers; callers supply the TL type id and payload to
`do()`. It has no cell or wallet support and no command-line tool.
Extended and variable-length addresses are kept as data only; they print as
`EXT_ADDRESS` and `VAR_ADDRESS`.