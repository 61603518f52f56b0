"""
zwave-qth-bridge binding of one Z-Wave value to a Qth topic.

Node: ValueBridge
"""

# std libraries
import json
import re
from typing import Any, List, Tuple

# personal libraries
from . import tasks
from .Broker import EVENT_MANY_TO_ONE, PROPERTY_ONE_TO_MANY
from .log import LOGGER

# runs of anything outside these collapse to a single "-"
NON_TOPIC_CHARS = re.compile(r"[^A-Za-z0-9()]+")

ValueIdentity = Tuple[int, int, Any, Any]


def sanitize_label(label: str) -> str:
    return NON_TOPIC_CHARS.sub("-", label)


def value_topic(node_prefix: str, label: str) -> str:
    """Topic path of a value, e.g. 'sys/zwave/nodes/5/values/Target-Value'."""
    return f"{node_prefix}values/{sanitize_label(label)}"


def value_label(value) -> str:
    """The metadata label, or one derived from the property when there is none."""
    label = value.metadata.label
    if label:
        return label
    label = value.property_name or str(value.property_)
    key = value.property_key_name or value.property_key
    if key is not None:
        label = f"{label} {key}"
    return label


def value_identity(value) -> ValueIdentity:
    """Identity of a zwave_js_server Value: (command class, endpoint, property, property key)."""
    return (value.command_class, value.endpoint or 0, value.property_, value.property_key)


def event_identity(args: dict) -> ValueIdentity:
    """Identity carried by the args of a 'value updated' event."""
    return (
        args.get("commandClass"),
        args.get("endpoint") or 0,
        args.get("property"),
        args.get("propertyKey"),
    )


class ValueBridge:
    """
    Binds one Z-Wave value to a value topic and a metadata topic.

    Readable values become a PROPERTY-1:N seeded with the current value;
    values that are only ever written become an EVENT-N:1 channel. Writeable
    values also accept writes from the broker.

    Every value this bridge pushes out, to the broker or to the device, is
    appended to `expected` before it goes. When the echo of that push comes
    back from the other side one matching entry is removed and the echo goes
    no further, so a change crosses the bridge exactly once.
    """

    def __init__(self, broker, node_prefix: str, node, value):
        """
        Registers the topics and subscribes to both sides.

        Args:
            broker: The Qth Broker.
            node_prefix: Topic prefix of the owning node, ending in '/'.
            node: The zwave_js_server Node owning the value.
            value: The zwave_js_server Value to bridge.
        """
        self.broker = broker
        self.node = node
        self.value = value
        self.identity = value_identity(value)
        self.metadata = value.metadata
        self.readable = bool(self.metadata.readable)
        self.writeable = bool(self.metadata.writeable)
        self.label = value_label(value)
        self.path = value_topic(node_prefix, self.label)
        self.metadata_path = f"{self.path}/metadata"
        self.expected: List[Any] = []
        self.removed = False
        self._unsubscribe = None
        self.lpfx = f"{node.node_id}:{self.label}"

        # The value itself
        self.broker.register(
            self.path,
            PROPERTY_ONE_TO_MANY if self.readable else EVENT_MANY_TO_ONE,
            self.describe(),
            delete_on_unregister=True,
        )
        if self.readable:
            current = value.value
            self._expect(current)
            self.broker.set_property(self.path, current)
            self._unsubscribe = node.on("value updated", self.on_value_updated)
        if self.writeable:
            if self.readable:
                self.broker.watch_property(self.path, self.on_set_value)
            else:
                self.broker.watch_event(self.path, self.on_set_value)

        # Metadata
        self.broker.register(
            self.metadata_path,
            PROPERTY_ONE_TO_MANY,
            "Information describing the value",
            delete_on_unregister=True,
        )
        self.broker.set_property(self.metadata_path, dict(self.metadata.data))
        LOGGER.debug(f"{self.lpfx} bridged to {self.path}")


    def describe(self) -> str:
        value = self.value
        return (
            f"Zwave '{self.label}' value. "
            f"Command class {value.command_class} ({value.command_class_name}), "
            f"endpoint {value.endpoint or 0}, "
            f"property {value.property_} ({value.property_name}), "
            f"property key {value.property_key} ({value.property_key_name}). "
            f"Metadata: {json.dumps(dict(self.metadata.data))}"
        )


    def _expect(self, value: Any):
        # None is a deleted property: its echo is dropped anyway
        if value is not None:
            self.expected.append(value)


    def _consume_expected(self, value: Any) -> bool:
        """Remove one queued entry equal to value, returning whether there was one."""
        try:
            self.expected.remove(value)
        except ValueError:
            return False
        return True


    def on_value_updated(self, event: dict):
        """
        Handles a 'value updated' event from the node.

        Events for other values on the same node are ignored. An update that
        matches a queued value is the device confirming our own write.
        """
        if self.removed:
            return
        args = event.get("args", {})
        if event_identity(args) != self.identity:
            return
        new_value = args.get("newValue")
        if self._consume_expected(new_value):
            LOGGER.debug(f"{self.lpfx} device echo of {new_value!r} absorbed")
            return
        LOGGER.info(f"{self.lpfx} device update: {new_value!r}")
        self._expect(new_value)
        self.broker.set_property(self.path, new_value)


    def on_set_value(self, _topic: str, value: Any):
        """
        Handles a write arriving from the broker.

        An absent value (the property being deleted, or an empty event) is
        never written to the device. A queued value is the broker echoing
        our own publish.
        """
        if self.removed or value is None:
            return
        if self._consume_expected(value):
            LOGGER.debug(f"{self.lpfx} broker echo of {value!r} absorbed")
            return
        # write-only values never report back, so nothing would consume the entry
        if self.readable:
            self._expect(value)
        LOGGER.info(f"{self.lpfx} set value: {value!r}")
        tasks.fire_and_forget(self.node.async_set_value(self.value, value))


    def remove(self):
        """Unregisters both topics and drops both subscriptions. Call exactly once."""
        self.removed = True
        self.broker.unregister(self.path)
        if self.writeable:
            if self.readable:
                self.broker.unwatch_property(self.path, self.on_set_value)
            else:
                self.broker.unwatch_event(self.path, self.on_set_value)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.broker.unregister(self.metadata_path)
        LOGGER.debug(f"{self.lpfx} removed")
