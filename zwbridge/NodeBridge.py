"""
zwave-qth-bridge binding of one Z-Wave node to a Qth topic subtree.

Node: NodeBridge
"""

# std libraries
from typing import Callable, Dict, List, Optional

# personal libraries
from . import tasks
from .Broker import EVENT_MANY_TO_ONE, PROPERTY_ONE_TO_MANY
from .ValueBridge import ValueBridge, ValueIdentity, event_identity, value_identity
from .log import LOGGER

REMOVE_COMMAND = "remove"

# read-only attribute topics: (topic name, description)
NODE_ATTRIBUTES = (
    ("manufacturer_name", "Device manufacturer's name"),
    ("description", "Device description"),
    ("neighbors", "Neighbouring node IDs"),
)

REFRESH_VALUES = "refresh_values"
REMOVE_FAILED_NODE = "remove_failed_node"


class NodeBridge:
    """
    Owns the topics under nodes/<id>/ for one Z-Wave node.

    Nothing is exposed until the node reports ready. A node that reports
    ready again (after a re-interview) has its subtree rebuilt. Between those,
    values the node adds or removes get their own bridge built or torn down.
    """

    def __init__(self, broker, prefix: str, controller, node):
        """
        Args:
            broker: The Qth Broker.
            prefix: Bridge-wide topic prefix, ending in '/'.
            controller: The zwave_js_server Controller, used for neighbours
                and forced removal.
            node: The zwave_js_server Node to bridge.
        """
        self.broker = broker
        self.controller = controller
        self.node = node
        self.node_prefix = f"{prefix}nodes/{node.node_id}/"
        self.values: Dict[ValueIdentity, ValueBridge] = {}
        self._value_unsubscribes: List[Callable[[], None]] = []
        self.exposed = False
        self.removed = False
        self.lpfx = f"node {node.node_id}"

        self._unsubscribe_ready = node.on("ready", self.on_ready)
        if node.ready:
            self.on_ready()


    def topic(self, name: str) -> str:
        return f"{self.node_prefix}{name}"


    def on_ready(self, _event: Optional[dict] = None):
        if self.removed:
            return
        if self.exposed:
            LOGGER.info(f"{self.lpfx} ready again, rebuilding topics")
            self._withdraw()
        LOGGER.info(f"{self.lpfx} ready")
        self._expose()


    def _expose(self):
        for name, description in NODE_ATTRIBUTES:
            self.broker.register(
                self.topic(name), PROPERTY_ONE_TO_MANY, description, delete_on_unregister=True
            )
        device_config = self.node.device_config
        self.broker.set_property(self.topic("manufacturer_name"), device_config.manufacturer)
        self.broker.set_property(self.topic("description"), device_config.description)
        tasks.fire_and_forget(self.publish_neighbors())

        # Refresh
        self.broker.register(
            self.topic(REFRESH_VALUES),
            EVENT_MANY_TO_ONE,
            "Trigger a poll of all this node's values",
            delete_on_unregister=True,
        )
        self.broker.watch_event(self.topic(REFRESH_VALUES), self.on_refresh_values)

        # Remove failed node
        self.broker.register(
            self.topic(REMOVE_FAILED_NODE),
            EVENT_MANY_TO_ONE,
            f"Send the string '{REMOVE_COMMAND}' to forcibly remove this node from the controller.",
            delete_on_unregister=True,
        )
        self.broker.watch_event(self.topic(REMOVE_FAILED_NODE), self.on_remove_failed_node)

        # Values
        for value in self.node.values.values():
            self._add_value(value)
        self._value_unsubscribes = [
            self.node.on("value added", self.on_value_added),
            self.node.on("value removed", self.on_value_removed),
        ]
        self.exposed = True
        LOGGER.debug(f"{self.lpfx} exposed {len(self.values)} values")


    async def publish_neighbors(self):
        try:
            neighbors = await self.controller.async_get_node_neighbors(self.node)
        except tasks.SERVER_ERRORS as ex:
            LOGGER.error(f"{self.lpfx} failed to fetch neighbours: {ex}")
            return
        # the node may have gone while the request was in flight
        if self.exposed and not self.removed:
            self.broker.set_property(self.topic("neighbors"), list(neighbors))


    def _add_value(self, value):
        identity = value_identity(value)
        existing = self.values.pop(identity, None)
        if existing is not None:
            existing.remove()
        self.values[identity] = ValueBridge(self.broker, self.node_prefix, self.node, value)


    def on_value_added(self, event: dict):
        if self.removed or not self.exposed:
            return
        value = event["value"]
        LOGGER.info(f"{self.lpfx} value added: {value.value_id}")
        self._add_value(value)


    def on_value_removed(self, event: dict):
        if self.removed or not self.exposed:
            return
        bridge = self.values.pop(event_identity(event.get("args", {})), None)
        if bridge is None:
            LOGGER.debug(f"{self.lpfx} removed value was not bridged")
            return
        LOGGER.info(f"{self.lpfx} value removed: {bridge.path}")
        bridge.remove()


    def on_refresh_values(self, _topic: str, _value):
        if self.removed:
            return
        LOGGER.info(f"{self.lpfx} refreshing values")
        tasks.fire_and_log(self.node.async_refresh_values(), f"{self.lpfx} refresh")


    def on_remove_failed_node(self, topic: str, value):
        if self.removed:
            return
        if value != REMOVE_COMMAND:
            LOGGER.warning(f"{self.lpfx} ignoring {value!r} on {topic}")
            return
        LOGGER.warning(f"{self.lpfx} forcing removal from the controller")
        tasks.fire_and_log(
            self.controller.async_remove_failed_node(self.node), f"{self.lpfx} removal"
        )


    def _withdraw(self):
        for unsubscribe in self._value_unsubscribes:
            unsubscribe()
        self._value_unsubscribes = []

        for name, _description in NODE_ATTRIBUTES:
            self.broker.unregister(self.topic(name))
        self.broker.unregister(self.topic(REFRESH_VALUES))
        self.broker.unregister(self.topic(REMOVE_FAILED_NODE))

        self.broker.unwatch_event(self.topic(REFRESH_VALUES), self.on_refresh_values)
        self.broker.unwatch_event(self.topic(REMOVE_FAILED_NODE), self.on_remove_failed_node)

        for value in self.values.values():
            value.remove()
        self.values = {}
        self.exposed = False


    def remove(self):
        """Tears down every topic and value bridge of this node. Call exactly once."""
        self.removed = True
        self._unsubscribe_ready()
        if self.exposed:
            self._withdraw()
        LOGGER.info(f"{self.lpfx} removed")
