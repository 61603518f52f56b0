"""Z-Wave to Qth bridge orchestrator.

This module provides the NetworkBridge class, the top-level owner of the
bridge. It publishes the state of the Z-Wave interface, exposes the
controller-wide operations (network healing, inclusion and exclusion) as
Qth topics and keeps one NodeBridge per Z-Wave node as nodes join and leave
the network.

Every handler runs on the asyncio loop, so the node registry and operation
state below are only ever mutated sequentially.
"""

# std libraries
from functools import partial
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

# external libraries
from zwave_js_server.const import InclusionStrategy

# personal libraries
from . import tasks
from .Broker import EVENT_MANY_TO_ONE, PROPERTY_MANY_TO_ONE, PROPERTY_ONE_TO_MANY
from .NodeBridge import NodeBridge
from .log import LOGGER

DEFAULT_PREFIX = "sys/zwave/"

STATE_TOPIC = "state"
HEAL_TOPIC = "heal_network"
HEAL_PROGRESS_TOPIC = "heal_network/progress"

STATE_STARTING = "starting"
STATE_DRIVER_READY = "driver ready"
STATE_ALL_NODES_READY = "all nodes ready"


class ModeOperation(NamedTuple):
    """Controller calls that begin and stop one mode."""
    begin: Callable[[Any], Any]
    stop: Callable[[Any], Any]


# inclusion/exclusion kind -> controller calls
OPERATIONS: Dict[str, ModeOperation] = {
    "inclusion": ModeOperation(
        begin=lambda controller: controller.async_begin_inclusion(InclusionStrategy.DEFAULT),
        stop=lambda controller: controller.async_stop_inclusion(),
    ),
    "exclusion": ModeOperation(
        begin=lambda controller: controller.async_begin_exclusion(),
        stop=lambda controller: controller.async_stop_exclusion(),
    ),
}

# controller event outcome -> published result
MODE_RESULTS = {
    "started": "in progress",
    "failed": "failed",
    "stopped": "success or manually stopped",
}


class NetworkBridge:
    """Top-level bridge between one Z-Wave driver and the Qth broker.

    Attributes:
        broker (Broker): Qth client shared with every child bridge.
        prefix (str): Topic prefix for everything this bridge publishes.
        driver: Current zwave_js_server Driver, None until ready.
        nodes (Dict[int, NodeBridge]): Node registry keyed by node id.
        state (str): Last published interface state.
        heal_progress (Optional[dict]): None when not healing, otherwise a
            mapping of node id to heal status (empty right after starting).
        modes (Dict[str, bool]): Last known inclusion/exclusion mode.
        results (Dict[str, Optional[str]]): Last inclusion/exclusion result.
    """

    def __init__(self, broker, prefix: str = DEFAULT_PREFIX):
        """Register the state topic and publish 'starting'.

        Args:
            broker: A started Broker.
            prefix: Topic prefix, ending in '/'.
        """
        self.broker = broker
        self.prefix = prefix
        self.driver = None
        self.nodes: Dict[int, NodeBridge] = {}
        self.state: Optional[str] = None
        self.heal_progress: Optional[dict] = None
        self.modes = {kind: False for kind in OPERATIONS}
        self.results: Dict[str, Optional[str]] = {kind: None for kind in OPERATIONS}

        # disposal handles: driver/controller unsubscribe callables, and
        # (path, handler, unwatch) triples for broker watches
        self._unsubscribes: List[Callable[[], None]] = []
        self._watches: List[Tuple[str, Callable, Callable]] = []
        self._features_registered = False

        self.broker.register(
            self.topic(STATE_TOPIC),
            PROPERTY_ONE_TO_MANY,
            "Human-readable state of the ZWave network interface.",
            delete_on_unregister=True,
        )
        self.set_state(STATE_STARTING)

    def topic(self, name: str) -> str:
        return f"{self.prefix}{name}"

    # --------------- Interface state ---------------
    def set_state(self, state: str) -> None:
        LOGGER.info(f"state: {state}")
        self.state = state
        self.broker.set_property(self.topic(STATE_TOPIC), state)

    def on_error(self, error: Any) -> None:
        """Report a driver or connection error; not terminal."""
        LOGGER.error(f"Z-Wave error: {error}")
        self.set_state(f"error: {error}")

    def on_all_nodes_ready(self, _event: Optional[dict] = None) -> None:
        self.set_state(STATE_ALL_NODES_READY)

    def on_driver_ready(self, driver) -> None:
        """Wire a freshly connected driver.

        Controller topics are registered once per process. A new driver (after
        a reconnect) replaces the previous one: its subscriptions and node
        bridges are torn down before the new ones are built.

        Args:
            driver: The zwave_js_server Driver that just became ready.
        """
        if driver is self.driver:
            return
        if self.driver is not None:
            LOGGER.info("New driver, releasing the previous one")
            self.release_driver()
        self.driver = driver
        self.set_state(STATE_DRIVER_READY)

        if not self._features_registered:
            self._register_healing()
            for kind in OPERATIONS:
                self._register_mode(kind)
            self._features_registered = True
        self.set_heal_progress(None)

        controller = driver.controller
        self._listen(driver, "all nodes ready", self.on_all_nodes_ready)
        self._listen(controller, "heal network progress", self.on_heal_network_progress)
        self._listen(controller, "heal network done", self.on_heal_network_done)
        for kind in OPERATIONS:
            for outcome in MODE_RESULTS:
                self._listen(controller, f"{kind} {outcome}", partial(self.on_mode_result, kind, outcome))

        # Nodes
        for node in controller.nodes.values():
            self.add_node(node)
        self._listen(controller, "node added", self.on_node_added)
        self._listen(controller, "node removed", self.on_node_removed)
        LOGGER.info(f"Bridging {len(self.nodes)} nodes")

    def _listen(self, emitter, event_name: str, handler: Callable) -> None:
        self._unsubscribes.append(emitter.on(event_name, handler))

    def _watch(self, path: str, handler: Callable, watch: Callable, unwatch: Callable) -> None:
        watch(path, handler)
        self._watches.append((path, handler, unwatch))

    def release_driver(self) -> None:
        """Drop every driver/controller subscription and every node bridge."""
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes = []
        for bridge in self.nodes.values():
            bridge.remove()
        self.nodes = {}
        self.driver = None

    def stop(self) -> None:
        """Tear the whole bridge down and close the broker connection."""
        LOGGER.info("Stopping bridge")
        self.release_driver()
        for path, handler, unwatch in self._watches:
            unwatch(path, handler)
        self._watches = []
        if self._features_registered:
            self.broker.unregister(self.topic(HEAL_TOPIC))
            self.broker.unregister(self.topic(HEAL_PROGRESS_TOPIC))
            for kind in OPERATIONS:
                self.broker.unregister(self.mode_topic(kind))
                self.broker.unregister(self.mode_topic(kind, "/result"))
            self._features_registered = False
        self.broker.unregister(self.topic(STATE_TOPIC))
        self.broker.stop()

    # --------------- Healing ---------------
    def _register_healing(self) -> None:
        self.broker.register(
            self.topic(HEAL_TOPIC),
            EVENT_MANY_TO_ONE,
            "Send a non-false value to start healing, send false to stop it.",
            delete_on_unregister=True,
        )
        self.broker.register(
            self.topic(HEAL_PROGRESS_TOPIC),
            PROPERTY_ONE_TO_MANY,
            "An object giving the healing status of each node (or null if not healing)",
            delete_on_unregister=True,
        )
        self._watch(self.topic(HEAL_TOPIC), self.on_heal_network,
                    self.broker.watch_event, self.broker.unwatch_event)

    def set_heal_progress(self, progress: Optional[dict]) -> None:
        self.heal_progress = progress
        self.broker.set_property(self.topic(HEAL_PROGRESS_TOPIC), progress)

    def on_heal_network(self, _topic: str, command: Any) -> None:
        """Start healing on any non-false command, stop it on false.

        An empty event counts as a start. A heal that is already running is
        not guarded against; the controller decides what a second start means.
        """
        if self.driver is None:
            LOGGER.warning("heal_network: no driver, ignoring")
            return
        controller = self.driver.controller
        if command is not False:
            LOGGER.info("Starting network heal")
            tasks.fire_and_log(controller.async_begin_healing_network(), "begin heal")
            self.set_heal_progress({})
        else:
            LOGGER.info("Stopping network heal")
            tasks.fire_and_log(controller.async_stop_healing_network(), "stop heal")
            self.set_heal_progress(None)

    def on_heal_network_progress(self, event: dict) -> None:
        progress = event.get("progress") or {}
        LOGGER.debug(f"heal progress: {progress}")
        self.set_heal_progress({str(node_id): status for node_id, status in progress.items()})

    def on_heal_network_done(self, _event: Optional[dict] = None) -> None:
        LOGGER.info("Network heal done")
        self.set_heal_progress(None)

    # --------------- Inclusion / Exclusion ---------------
    def mode_topic(self, kind: str, suffix: str = "") -> str:
        return self.topic(f"{kind}_mode{suffix}")

    def _register_mode(self, kind: str) -> None:
        self.broker.register(
            self.mode_topic(kind),
            PROPERTY_MANY_TO_ONE,
            f"Set to true to begin {kind} and false to stop {kind}.",
            delete_on_unregister=True,
        )
        self.broker.register(
            self.mode_topic(kind, "/result"),
            PROPERTY_ONE_TO_MANY,
            f"Stores the state of the last {kind} operation.",
            delete_on_unregister=True,
        )
        self.broker.set_property(self.mode_topic(kind), self.modes[kind])
        self._watch(self.mode_topic(kind), partial(self.on_mode_command, kind),
                    self.broker.watch_property, self.broker.unwatch_property)

    def on_mode_command(self, kind: str, topic: str, state: Any) -> None:
        """Begin (true) or stop (false) inclusion or exclusion."""
        if not isinstance(state, bool):
            if state is not None:
                LOGGER.warning(f"{topic}: ignoring non-boolean {state!r}")
            return
        if state == self.modes[kind]:
            # our own publish coming back, or a repeat of the current mode
            return
        if self.driver is None:
            LOGGER.warning(f"{topic}: no driver, ignoring")
            return
        self.modes[kind] = state
        operation = OPERATIONS[kind]
        call = operation.begin if state else operation.stop
        LOGGER.info(f"{'Beginning' if state else 'Stopping'} {kind}")
        tasks.fire_and_log(call(self.driver.controller), f"{kind} {'begin' if state else 'stop'}")

    def on_mode_result(self, kind: str, outcome: str, _event: Optional[dict] = None) -> None:
        result = MODE_RESULTS[outcome]
        LOGGER.info(f"{kind}: {result}")
        self.results[kind] = result
        self.broker.set_property(self.mode_topic(kind, "/result"), result)
        mode = outcome == "started"
        if self.modes[kind] != mode:
            self.modes[kind] = mode
            self.broker.set_property(self.mode_topic(kind), mode)

    # --------------- Nodes ---------------
    def add_node(self, node) -> None:
        """Bridge a node, replacing any bridge already registered for its id."""
        existing = self.nodes.pop(node.node_id, None)
        if existing is not None:
            LOGGER.info(f"node {node.node_id} re-added, replacing its bridge")
            existing.remove()
        self.nodes[node.node_id] = NodeBridge(self.broker, self.prefix, self.driver.controller, node)

    def remove_node(self, node_id: int) -> None:
        bridge = self.nodes.pop(node_id, None)
        if bridge is None:
            LOGGER.debug(f"node {node_id} removed but was not bridged")
            return
        bridge.remove()

    def on_node_added(self, event: dict) -> None:
        self.add_node(event["node"])

    def on_node_removed(self, event: dict) -> None:
        self.remove_node(event["node"].node_id)
