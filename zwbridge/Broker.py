"""Qth broker client for the Z-Wave bridge.

Qth is a set of conventions layered on MQTT: every client advertises the
topics it serves in a retained registration document, properties are
retained JSON values and events are non-retained JSON messages. This module
implements the subset of those conventions the bridge needs on top of the
paho-mqtt client.

Broker callbacks arrive on the paho network thread; they are handed to the
asyncio loop so that every bridge handler runs on the same thread as the
Z-Wave events.
"""

# std libraries
import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Set

# external libraries
from paho.mqtt.client import Client
from paho.mqtt.enums import CallbackAPIVersion

# personal libraries
from .log import LOGGER

# Qth topic behaviours
PROPERTY_ONE_TO_MANY = "PROPERTY-1:N"
PROPERTY_MANY_TO_ONE = "PROPERTY-N:1"
EVENT_MANY_TO_ONE = "EVENT-N:1"

REGISTRATION_PREFIX = "meta/clients/"

Handler = Callable[[str, Any], None]


def encode(value: Any) -> str:
    """JSON-encode a value; None becomes the empty payload (a deleted property)."""
    return "" if value is None else json.dumps(value)


def decode(payload: bytes) -> Any:
    """Inverse of encode. Raises ValueError for payloads that are not JSON."""
    if not payload:
        return None
    return json.loads(payload.decode("utf-8"))


class Broker:
    """Qth client bound to one MQTT connection.

    Attributes:
        client_id (str): MQTT client id, also names the registration topic.
        description (str): Human-readable description of this client.
        loop: asyncio loop on which handlers are invoked.
        registrations (Dict[str, dict]): Registered topics keyed by path.
        watchers (Dict[str, List[Handler]]): Handlers per watched path.
        delivered (Set[str]): Watched paths that have had at least one
            message delivered since they were first watched.
        mqttc (Client): paho-mqtt client, None until start().
    """

    def __init__(self, client_id: str, description: str):
        self.client_id = client_id
        self.description = description
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.registrations: Dict[str, dict] = {}
        self.watchers: Dict[str, List[Handler]] = {}
        self.delivered: Set[str] = set()
        self.mqttc: Optional[Client] = None

    @property
    def registration_topic(self) -> str:
        return f"{REGISTRATION_PREFIX}{self.client_id}"

    def start(self, server: str, port: int, user: Optional[str] = None,
              password: Optional[str] = None,
              loop: Optional[asyncio.AbstractEventLoop] = None) -> bool:
        """Connect to the MQTT broker and start the network thread.

        The MQTT last will clears the registration document, so if this
        process drops off without a clean stop() the registrar removes every
        topic registered with delete_on_unregister.

        Args:
            server: MQTT broker host.
            port: MQTT broker port.
            user: Optional username.
            password: Optional password.
            loop: Loop to dispatch handlers on; defaults to the running loop.

        Returns:
            bool: True if the connection was started, False otherwise.
        """
        self.loop = loop or asyncio.get_running_loop()
        self.mqttc = Client(CallbackAPIVersion.VERSION1, client_id=self.client_id)
        self.mqttc.on_connect = self._on_connect
        self.mqttc.on_disconnect = self._on_disconnect  # type: ignore
        self.mqttc.on_message = self._on_message
        if user:
            self.mqttc.username_pw_set(user, password)
        self.mqttc.will_set(self.registration_topic, None, retain=True)

        try:
            self.mqttc.connect(server, port, keepalive=10)
            self.mqttc.loop_start()
        except Exception as ex:
            LOGGER.error(f"Error connecting to MQTT broker {server}:{port}: {ex}")
            return False
        LOGGER.info(f"MQTT connecting to {server}:{port} as {self.client_id}")
        return True

    def stop(self) -> None:
        """Withdraw the registration and disconnect cleanly."""
        if self.mqttc is None:
            return
        for path in list(self.registrations):
            self.unregister(path)
        self.mqttc.publish(self.registration_topic, None, retain=True)
        self.mqttc.disconnect()
        self.mqttc.loop_stop()
        LOGGER.info("MQTT disconnected")

    # --------------- Registration ---------------
    def register(self, path: str, behaviour: str, description: str,
                 delete_on_unregister: bool = False) -> None:
        """Advertise a topic in this client's registration document."""
        entry = {"behaviour": behaviour, "description": description}
        if delete_on_unregister:
            entry["delete_on_unregister"] = True
        self.registrations[path] = entry
        self._publish_registration()

    def unregister(self, path: str) -> None:
        """Withdraw a topic; properties registered with delete_on_unregister are deleted."""
        entry = self.registrations.pop(path, None)
        if entry is None:
            LOGGER.debug(f"unregister: {path} was not registered")
            return
        self._publish_registration()
        if entry.get("delete_on_unregister") and entry["behaviour"].startswith("PROPERTY"):
            self.set_property(path, None)

    def _publish_registration(self) -> None:
        document = {"description": self.description, "topics": self.registrations}
        self._publish(self.registration_topic, json.dumps(document), retain=True)

    # --------------- Values ---------------
    def set_property(self, path: str, value: Any) -> None:
        """Set a property to value; None deletes it."""
        self._publish(path, encode(value), retain=True)

    def _publish(self, topic: str, payload: str, retain: bool) -> None:
        LOGGER.debug(f"mqtt_pub: topic: {topic}, payload: {payload}")
        if self.mqttc is None:
            LOGGER.warning(f"mqtt_pub: not started, dropping {topic}")
            return
        self.mqttc.publish(topic, payload, retain=retain)

    # --------------- Watching ---------------
    def watch_property(self, path: str, handler: Handler) -> None:
        self._watch(path, handler)

    def unwatch_property(self, path: str, handler: Handler) -> None:
        self._unwatch(path, handler)

    def watch_event(self, path: str, handler: Handler) -> None:
        self._watch(path, handler)

    def unwatch_event(self, path: str, handler: Handler) -> None:
        self._unwatch(path, handler)

    def _watch(self, path: str, handler: Handler) -> None:
        handlers = self.watchers.setdefault(path, [])
        handlers.append(handler)
        if len(handlers) == 1 and self.mqttc is not None:
            self.mqttc.subscribe(path)

    def _unwatch(self, path: str, handler: Handler) -> None:
        handlers = self.watchers.get(path)
        if not handlers or handler not in handlers:
            LOGGER.debug(f"unwatch: no such handler on {path}")
            return
        handlers.remove(handler)
        if not handlers:
            del self.watchers[path]
            self.delivered.discard(path)
            if self.mqttc is not None:
                self.mqttc.unsubscribe(path)

    def dispatch(self, topic: str, value: Any, retained: bool = False) -> None:
        """Deliver a decoded message to the handlers watching topic.

        The broker flags a message as retained only when it replays the stored
        value to a fresh subscription. A replay is delivered only if nothing
        has been delivered on the path yet (it is then the echo of our own
        seed, or state written while nobody listened). Replays caused by
        resubscribing after a reconnect are stale and dropped.
        """
        if retained and topic in self.delivered:
            LOGGER.debug(f"Dropping replayed retained value on {topic}: {value!r}")
            return
        if topic in self.watchers:
            self.delivered.add(topic)
        # copy: a handler may unwatch (or tear down a whole bridge) mid-dispatch
        for handler in list(self.watchers.get(topic, ())):
            handler(topic, value)

    # --------------- paho callbacks (network thread) ---------------
    def _on_connect(self, _mqttc, _userdata, _flags, rc):
        """Re-advertise registrations and replay subscriptions on every connect.

        Args:
            _mqttc: MQTT client instance (unused).
            _userdata: User data passed to the client (unused).
            _flags: Connection flags (unused).
            rc (int): Return code indicating connection result (0 = success).
        """
        if rc != 0:
            LOGGER.error(f"MQTT connect failed with rc:{rc}")
            return
        LOGGER.info("MQTT connected")
        self._publish_registration()
        for path in list(self.watchers):
            result, mid = self.mqttc.subscribe(path)
            if result == 0:
                LOGGER.debug(f"Subscribed to {path} MID: {mid}")
            else:
                LOGGER.error(f"Failed to subscribe {path} MID: {mid}, res: {result}")

    def _on_disconnect(self, _mqttc, _userdata, rc):
        if rc != 0:
            # the paho network thread reconnects on its own
            LOGGER.warning(f"MQTT disconnected unexpectedly rc:{rc}, reconnecting")
        else:
            LOGGER.info("MQTT graceful disconnection")

    def _on_message(self, _mqttc, _userdata, message):
        try:
            value = decode(message.payload)
        except (ValueError, UnicodeDecodeError) as ex:
            LOGGER.warning(f"Ignoring non-JSON payload on {message.topic}: {ex}")
            return
        LOGGER.debug(f"Received message from {message.topic}: {value!r}")
        self.loop.call_soon_threadsafe(self.dispatch, message.topic, value, message.retain)
