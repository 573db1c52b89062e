# waspbroker

The building blocks of a clustered MQTT broker, in plain Python with no
third-party dependencies.

## What is inside

- `waspbroker.format` – splitting MQTT topics level by level (`next_token`).
- `waspbroker.topics` – a tree of retained messages (`RetainedStore`) that
  understands the `+` and `#` wildcards.
- `waspbroker.subscriptions` – a tree of subscriptions (`SubscriptionTree`)
  that resolves a published topic to the sessions, peers and QoS levels that
  should receive it.
- `waspbroker.packet` – MQTT packet types (`Connect`, `Publish`,
  `Subscribe`, `PingReq`, …).
- `waspbroker.sessions` – connected sessions, mount points
  (`prefix_mount_point`, `trim_mount_point`) and a `SessionStore`.
- `waspbroker.auth` – authentication handlers: `NoopHandler`,
  `StaticHandler` and `FileHandler`.
- `waspbroker.audit` – audit event recorders: `NoneRecorder` and
  `StdoutRecorder`.
- `waspbroker.stats` – in-process gauges and histograms with a text
  exposition (`render_metrics`, `listen_and_serve`).
- `waspbroker.messages` – a bounded, persistent message log (`MessageLog`)
  with named consumers that resume where they left off.
- `waspbroker.state` – the broker state: subscriptions, retained messages
  and session metadata, dumpable and loadable as a whole.
- `waspbroker.fsm` – the state machine that encodes state transitions as
  commands and applies them to a `State`.
- `waspbroker.handlers` – handling of incoming packets and publish fan-out.
- `waspbroker.mqttserver` – the peer-to-peer service (`MqttServer`).
- `waspbroker.connection` – the lifetime of one client connection
  (`run_session`).
- `waspbroker.taps` – forwarding logged messages elsewhere (`run`,
  `SyslogTap`).

## Retained messages

```python
from waspbroker.topics import RetainedStore

store = RetainedStore()
store.insert(b"devices/cars/a", b"a")
store.insert(b"devices/cars/b", b"b")
store.insert(b"devices/bicycle/c", b"c")

store.match(b"devices/cars/+")   # payloads of a and b
store.match(b"devices/#")        # all three payloads
store.count()                    # 3

store.remove(b"devices/cars/a")
```

A store can be saved with `dump()` and restored into another store with
`load()`.

## Subscriptions

```python
from waspbroker.subscriptions import SubscriptionTree

tree = SubscriptionTree()
tree.insert(1, b"test/a", 0, "session-1")
tree.insert(1, b"test/+", 1, "session-2")
tree.insert(2, b"test/b/c", 1, "session-3")

tree.match(b"test/a")    # session-1 and session-2, with their peer and QoS
tree.remove_peer(2)      # drops session-3, returns 1
tree.count()             # 2
```

## Mount points

Every session lives under a mount point, which prefixes the topics it uses:

```python
from waspbroker.sessions import prefix_mount_point, trim_mount_point

prefix_mount_point("_default", b"test")          # b"_default/test"
trim_mount_point("_default", b"_default/test")   # b"test"
```

## Running the tests

The test suite uses pytest, available through the `test` extra.