# lookupd

`lookupd` is a directory service for a cluster of message queue nodes.
Each node connects over TCP, identifies itself and registers the topics
and channels it carries. Consumers and admin tools then ask over HTTP
which nodes carry a given topic.

The registry lives only in memory. When a node's connection closes, the
node is removed as a producer from every registration it held. The topic
and channel entries themselves stay listed.

## Installing

```
pip install .
```

You need Python 3.10 or later. There are no other dependencies.

## Running

```
lookupd
```

By default the TCP listener binds `0.0.0.0:4160` and the HTTP listener
binds `0.0.0.0:4161`. Run `lookupd --help` to list the options:

- `--tcp-address`, `--http-address`: `<addr>:<port>` to listen on.
- `--broadcast-address`: the address this node reports to others. The
  default is the host name.
- `--log-level`: `debug`, `info` (the default), `warn` (or `warning`),
  `error` or `fatal`.
- `--log-prefix`: the prefix for log lines. The default is `[nsqlookupd] `.
- `--inactive-producer-timeout`: how long after its last `PING` a producer
  counts as inactive. The default is `300s`.
- `--tombstone-lifetime`: how long a tombstone lasts. The default is `45s`.
- `--version`: print the version and exit.

Durations take a bare number of seconds (`300`) or units such as `45s`,
`50ms` or `1m30s`. Log lines go to standard error. The daemon stops on
SIGINT or SIGTERM.

## TCP protocol

A node first sends the four bytes `"  V1"`. If it sends anything else, the
server answers `E_BAD_PROTOCOL` and closes the connection. After the magic
bytes, the node sends newline-terminated commands:

- `IDENTIFY`, followed by a 4-byte big-endian length and a JSON body. The
  body must contain `broadcast_address`, `tcp_port`, `http_port` and
  `version`. It may also contain `hostname`. The server replies with JSON
  holding its own `tcp_port`, `http_port`, `version`, `broadcast_address`
  and `hostname`.
- `REGISTER <topic> [<channel>]`
- `UNREGISTER <topic> [<channel>]`. When the last producer leaves a name
  that ends in `#ephemeral`, that registration is removed as well.
- `PING`, which marks the node as still active.

`REGISTER` and `UNREGISTER` require a prior `IDENTIFY`. Each response is
framed as a 4-byte big-endian length followed by the data. An error is
sent back as `CODE description`, for example
`E_INVALID invalid command FOO`, and the connection is then closed.

## HTTP API

| Method | Path               | Parameters         |
|--------|--------------------|--------------------|
| GET    | `/ping`            |                    |
| GET    | `/info`            |                    |
| GET    | `/topics`          |                    |
| GET    | `/channels`        | `topic`            |
| GET    | `/lookup`          | `topic`            |
| GET    | `/nodes`           |                    |
| GET    | `/debug`           |                    |
| POST   | `/topic/create`    | `topic`            |
| POST   | `/topic/delete`    | `topic`            |
| POST   | `/topic/tombstone` | `topic`, `node`    |
| POST   | `/channel/create`  | `topic`, `channel` |
| POST   | `/channel/delete`  | `topic`, `channel` |

- `/ping` answers `OK` as plain text.
- Successful create, delete and tombstone requests return an empty body.
- Errors come back as JSON such as `{"message": "MISSING_ARG_TOPIC"}`:
  - 400 for missing or invalid arguments.
  - 404 for `TOPIC_NOT_FOUND`, `CHANNEL_NOT_FOUND` or an unknown path.
  - 405 for a method the path does not accept.

`/lookup` lists a topic's channels and its producers. It leaves out
producers that are inactive or tombstoned. To tombstone a producer, send
`node` as `<broadcast_address>:<http_port>`. The producer is then hidden
from `/lookup` for that topic until the tombstone lifetime has passed.
`/nodes` lists every active node with its topics and a tombstone flag per
topic. `/debug` dumps the whole registry.

## Using it as a library

```python
from lookupd.registration_db import Registration, RegistrationDB

db = RegistrationDB()
db.add_registration(Registration("topic", "orders", ""))
print(db.find_registrations("topic", "*", "").keys())  # ['orders']
```

To run both listeners inside your own program, pass an
`lookupd.options.Options` to `lookupd.server.NSQLookupd`. Call `main()` to
serve until `exit()` is called. Use `tcp_address` and `http_address` to
read the bound addresses.

`lookupd.http.HTTPApi(db, options).handle(method, target)` answers a
request without opening a socket. It returns the status code, the
headers and the body, which makes it handy in tests.

`lookupd.lookup_protocol.LookupProtocolV1` runs the TCP command set over
any pair of byte streams wrapped in a `Client`.

## What it does not do

- The registry is not persisted. It starts empty on every run.
- No profiling or runtime-inspection endpoints are served.
- The package contains only the directory service. It does not carry
  messages and does not include the queue nodes or a client library for
  them.