#
# Publishes one envelope per connection on the MQTT broker.
# Connect, publish, wait for broker ack, disconnect, all within one deadline.
#

import enum
import uuid
import asyncio
from collections import namedtuple

import paho.mqtt.client as mqtt

from ..errors import ErrorKind, PublishError
from ..utils import getLogger

logger = getLogger('broker.publisher')


class State(enum.Enum):
    IDLE = 'idle'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    PUBLISHING = 'publishing'
    ACKED = 'acked'
    CONN_FAILED = 'conn_failed'
    PUBLISH_FAILED = 'publish_failed'
    TIMED_OUT = 'timed_out'

TERMINAL_STATES = {State.ACKED, State.CONN_FAILED, State.PUBLISH_FAILED, State.TIMED_OUT}

_failure_states = {
    ErrorKind.CONNECT_FAILED: State.CONN_FAILED,
    ErrorKind.PUBLISH_FAILED: State.PUBLISH_FAILED,
    ErrorKind.TIMEOUT: State.TIMED_OUT,
}

Ack = namedtuple('Ack', ['topic', 'mid', 'qos', 'client_id', 'size'])


def new_client_id(prefix):
    "Random client id, so concurrent publishers never share a session"
    return "{}{}".format(prefix, uuid.uuid4().hex[:16])


def mqtt_client_factory(client_id):
    "Fresh paho client without persistent session"
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2,
                       client_id=client_id, clean_session=True)


class PublishAttempt:
    """
    Owns one client connection for one publish. Not reusable.

    Paho runs its network loop in a thread, callbacks are handed over
    to the event loop so all state changes happen on the loop.
    """
    def __init__(self, client, client_id, broker, keepalive=60):
        self.client = client
        self.client_id = client_id
        self.broker = broker
        self.keepalive = keepalive
        self.state = State.IDLE
        self._released = False
        self._mid = None
        self._loop = None
        self._connected = None
        self._acked = None

    def _transition(self, state):
        logger.debug("Client %s: %s -> %s", self.client_id, self.state.value, state.value)
        self.state = state

    def _threadsafe(self, fn):
        "Wrap callback so it runs on the event loop instead of the paho thread"
        loop = self._loop
        def callback(*args):
            # Late callbacks of a torn down connection are of no interest
            if self._released or loop.is_closed():
                return
            loop.call_soon_threadsafe(fn, *args)
        return callback

    def _settle(self, fut, result=None, exc=None):
        if self._released or fut.done():
            return
        if exc is not None:
            fut.set_exception(exc)
        else:
            fut.set_result(result)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if getattr(reason_code, 'is_failure', bool(reason_code)):
            self._settle(self._connected, exc=PublishError(
                ErrorKind.CONNECT_FAILED, "Broker refused connection", reason_code))
        else:
            self._settle(self._connected, True)

    def _on_connect_fail(self, client, userdata):
        self._settle(self._connected, exc=PublishError(
            ErrorKind.CONNECT_FAILED, "Failed to connect to MQTT broker",
            "{}:{} unreachable".format(self.broker.host, self.broker.port)))

    def _on_publish(self, client, userdata, mid, reason_code=None, properties=None):
        if mid != self._mid:
            return
        if getattr(reason_code, 'is_failure', False):
            self._settle(self._acked, exc=PublishError(
                ErrorKind.PUBLISH_FAILED, "Broker rejected publish", reason_code))
        else:
            self._settle(self._acked, mid)

    def _on_disconnect(self, client, userdata, flags=None, reason_code=None, properties=None):
        cause = reason_code or "connection lost"
        if not self._connected.done():
            self._settle(self._connected, exc=PublishError(
                ErrorKind.CONNECT_FAILED, "Failed to connect to MQTT broker", cause))
        else:
            self._settle(self._acked, exc=PublishError(
                ErrorKind.PUBLISH_FAILED, "Disconnected before broker acknowledged", cause))

    async def _connect_and_publish(self, topic, payload, qos):
        c = self.client
        self._transition(State.CONNECTING)
        c.on_connect = self._threadsafe(self._on_connect)
        c.on_connect_fail = self._threadsafe(self._on_connect_fail)
        c.on_publish = self._threadsafe(self._on_publish)
        c.on_disconnect = self._threadsafe(self._on_disconnect)
        try:
            if self.broker.username:
                c.username_pw_set(self.broker.username, self.broker.password)
            if self.broker.tls:
                c.tls_set()
            c.connect_async(self.broker.host, self.broker.port, self.keepalive)
            c.loop_start()
        except (OSError, ValueError) as e:
            raise PublishError(ErrorKind.CONNECT_FAILED, "Failed to connect to MQTT broker", e)

        await self._connected
        self._transition(State.CONNECTED)

        self._transition(State.PUBLISHING)
        info = c.publish(topic, payload, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(ErrorKind.PUBLISH_FAILED, "Failed to publish to MQTT",
                               mqtt.error_string(info.rc))
        # Ack callback goes through the loop, so cannot arrive before this
        self._mid = info.mid
        await self._acked
        self._transition(State.ACKED)
        return Ack(topic, info.mid, qos, self.client_id, len(payload))

    def _release(self):
        """
        Tear down transport, exactly once per attempt.
        Returns future that resolves when the network thread is joined.
        """
        if self._released:
            return None
        self._released = True
        logger.debug("Client %s: releasing connection", self.client_id)
        self.client.disconnect()
        # Joining blocks while a socket connect is pending, keep it off the loop
        joined = self._loop.run_in_executor(None, self.client.loop_stop)
        joined.add_done_callback(self._joined)
        return joined

    def _joined(self, fut):
        "Nobody awaits the join after a timeout, errors end up here"
        if fut.cancelled():
            return
        e = fut.exception()
        if e is not None:
            logger.error("Client %s: stopping network loop failed: %r", self.client_id, e)

    async def run(self, topic, payload, qos, deadline):
        """
        Race connect-publish-ack against the deadline, first one to finish wins.
        :return: Ack
        :raises PublishError: ConnectFailed, PublishFailed or Timeout
        """
        if self.state != State.IDLE:
            raise RuntimeError("Publish attempt can only run once")
        self._loop = asyncio.get_event_loop()
        self._connected = self._loop.create_future()
        self._acked = self._loop.create_future()

        work = asyncio.ensure_future(self._connect_and_publish(topic, payload, qos))
        timer = asyncio.ensure_future(asyncio.sleep(deadline))
        try:
            await asyncio.wait([work, timer], return_when=asyncio.FIRST_COMPLETED)
            if work.done():
                return work.result()
            self._transition(State.TIMED_OUT)
            raise PublishError(ErrorKind.TIMEOUT, "MQTT connection timeout",
                               "no broker acknowledgment within {}s".format(deadline))
        except PublishError as e:
            if self.state not in TERMINAL_STATES:
                self._transition(_failure_states[e.kind])
            raise
        finally:
            for t in (work, timer):
                t.cancel()
            joined = self._release()
            # Let cancelled work unwind before returning
            await asyncio.wait([work, timer])
            # Failures that lost the race were already reported another way
            for f in (self._connected, self._acked):
                if f.done() and not f.cancelled():
                    f.exception()
            # Timed out means we may be stuck in a connect, don't wait for it
            if joined is not None and self.state != State.TIMED_OUT:
                await asyncio.wait([joined])


class BrokerPublisher:
    "Keeps only settings, every publish gets its own connection"

    def __init__(self, config, client_factory=mqtt_client_factory):
        self.config = config
        self.client_factory = client_factory

    def new_attempt(self):
        client_id = new_client_id(self.config.client_id_prefix)
        return PublishAttempt(self.client_factory(client_id), client_id,
                              self.config.broker, keepalive=self.config.keepalive)

    async def publish(self, topic, envelope, qos=None, deadline=None):
        """
        Publish envelope and wait for broker acknowledgment.
        :param topic: MQTT topic
        :param envelope: normalizer.Envelope, serialized as UTF-8 JSON
        :param qos: Defaults to configured QoS
        :param deadline: Seconds for the whole attempt, defaults to configured timeout
        :return: Ack
        :raises PublishError:
        """
        qos = self.config.qos if qos is None else qos
        deadline = self.config.publish_timeout if deadline is None else deadline
        payload = envelope.to_bytes()
        attempt = self.new_attempt()
        logger.debug("Publishing %s bytes on %s as %s", len(payload), topic, attempt.client_id)
        ack = await attempt.run(topic, payload, qos, deadline)
        logger.info("Broker acknowledged message %s on %s", ack.mid, topic)
        return ack
