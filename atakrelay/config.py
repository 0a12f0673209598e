#
# Configuration from environment, all values overridable.
#

import os
from collections import namedtuple
from urllib.parse import urlsplit, unquote

from .errors import ConfigError

MQTT_BROKER = 'mqtt://broker.hivemq.com:1883'
MQTT_TOPIC = 'aaron_nev/atak_targets'
# At least once, broker acknowledges every publish
MQTT_QOS = 1
# Seconds, spans connect up to and including the broker ack
MQTT_TIMEOUT = 10.0
MQTT_KEEPALIVE = 60
# Prefix plus 16 hex chars stays within the 23 chars MQTT 3.1 brokers accept
MQTT_CLIENT_ID_PREFIX = 'atak_'

IMAGE_MAX_BYTES = 10 * 1024 * 1024
IMAGE_TYPES = ('image/jpeg', 'image/png', 'image/jpg', 'image/gif', 'image/webp')
RAW_MAX_BYTES = 1024 * 1024

HTTP_HOST = '127.0.0.1'
HTTP_PORT = 5000

UPLOAD_TIMEOUT = 30.0
CLOUDINARY_FOLDER = 'atak_targets'

BrokerAddress = namedtuple('BrokerAddress', ['host', 'port', 'tls', 'username', 'password'])


def parse_broker_url(url):
    "Parse mqtt://[user:pass@]host[:port] or mqtts://..."
    parts = urlsplit(url)
    if parts.scheme not in ('mqtt', 'mqtts', 'tcp', 'ssl'):
        raise ConfigError("Unsupported broker URL scheme: {}".format(url))
    if not parts.hostname:
        raise ConfigError("Broker URL has no host: {}".format(url))
    tls = parts.scheme in ('mqtts', 'ssl')
    try:
        port = parts.port or (8883 if tls else 1883)
    except ValueError:
        raise ConfigError("Invalid broker port: {}".format(url))
    username = unquote(parts.username) if parts.username else None
    password = unquote(parts.password) if parts.password else None
    return BrokerAddress(parts.hostname, port, tls, username, password)


_fields = [
    'broker_url', 'topic', 'qos', 'publish_timeout', 'keepalive', 'client_id_prefix',
    'image_max_bytes', 'image_types', 'raw_max_bytes',
    'http_host', 'http_port',
    'upload_timeout', 'cloudinary_cloud_name', 'cloudinary_api_key',
    'cloudinary_api_secret', 'cloudinary_folder',
]


class Config(namedtuple('Config', _fields)):
    "Immutable settings, build with Config.from_env()"
    __slots__ = ()

    @classmethod
    def from_env(cls, environ=None):
        """
        Read settings from environment variables.
        :param environ: Mapping to read from, defaults to os.environ
        :return: Config
        :raises ConfigError: on values that cannot be parsed or are out of range
        """
        e = os.environ if environ is None else environ

        def num(name, conv, default):
            v = e.get(name)
            if v is None or not v.strip():
                return default
            try:
                return conv(v)
            except ValueError:
                raise ConfigError("Invalid value for {}: {!r}".format(name, v))

        types = e.get('RELAY_IMAGE_TYPES')
        if types:
            types = tuple(t.strip().lower() for t in types.split(',') if t.strip())
        conf = cls(
            broker_url=e.get('RELAY_BROKER_URL') or MQTT_BROKER,
            topic=e.get('RELAY_TOPIC') or MQTT_TOPIC,
            qos=num('RELAY_QOS', int, MQTT_QOS),
            publish_timeout=num('RELAY_PUBLISH_TIMEOUT', float, MQTT_TIMEOUT),
            keepalive=num('RELAY_KEEPALIVE', int, MQTT_KEEPALIVE),
            client_id_prefix=e.get('RELAY_CLIENT_ID_PREFIX', MQTT_CLIENT_ID_PREFIX),
            image_max_bytes=num('RELAY_IMAGE_MAX_BYTES', int, IMAGE_MAX_BYTES),
            image_types=types or IMAGE_TYPES,
            raw_max_bytes=num('RELAY_RAW_MAX_BYTES', int, RAW_MAX_BYTES),
            http_host=e.get('RELAY_HTTP_HOST') or HTTP_HOST,
            http_port=num('RELAY_HTTP_PORT', int, HTTP_PORT),
            upload_timeout=num('RELAY_UPLOAD_TIMEOUT', float, UPLOAD_TIMEOUT),
            cloudinary_cloud_name=e.get('CLOUDINARY_CLOUD_NAME'),
            cloudinary_api_key=e.get('CLOUDINARY_API_KEY'),
            cloudinary_api_secret=e.get('CLOUDINARY_API_SECRET'),
            cloudinary_folder=e.get('RELAY_CLOUDINARY_FOLDER') or CLOUDINARY_FOLDER,
        )
        conf.check()
        return conf

    def check(self):
        "Raise ConfigError if settings are inconsistent"
        # Fail early on bad broker URLs instead of on first publish
        parse_broker_url(self.broker_url)
        if not self.topic or any(c in self.topic for c in '#+'):
            raise ConfigError("Topic must be a non-empty name without wildcards: {!r}".format(self.topic))
        # QoS 0 has no broker acknowledgment
        if self.qos not in (1, 2):
            raise ConfigError("QoS must be 1 or 2, got {}".format(self.qos))
        if self.publish_timeout <= 0:
            raise ConfigError("Publish timeout must be positive")
        if self.image_max_bytes <= 0 or self.raw_max_bytes <= 0:
            raise ConfigError("Size limits must be positive")
        return self

    @property
    def broker(self):
        return parse_broker_url(self.broker_url)


def default_config():
    "Config with all defaults, ignoring the environment"
    return Config.from_env({})
