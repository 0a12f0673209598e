#
# Validates raw observation payloads and completes them into the
# canonical envelope that gets published. No I/O in here.
#

import json
import time
from types import MappingProxyType
from collections import namedtuple
from collections.abc import Mapping, Sequence

import jsonschema

from ..errors import ErrorKind, ValidationError
from ..schemas import JSON_SCHEMA_TARGET_ENVELOPE
from ..utils import getLogger, round_coord

logger = getLogger('messages.normalizer')

# Checked in this order, first missing one is reported
REQUIRED_TARGET_FIELDS = ('lat', 'lon', 'heading', 'pitch', 'roll', 'distance_m')
# Wire order of target keys
TARGET_KEYS = ('lat', 'lon', 'src_lat', 'src_lon', 'heading', 'pitch',
               'roll', 'distance_m', 'ts', 'image')


class Envelope(namedtuple('Envelope', ['ts', 'count', 'targets'])):
    "Immutable batch of targets, targets are read-only mappings"
    __slots__ = ()

    def as_dict(self):
        "Fresh plain dict copy, safe to modify"
        return {
            'ts': self.ts,
            'count': self.count,
            'targets': [dict(t) for t in self.targets],
        }

    def to_json(self):
        # NaN and Infinity are not JSON
        return json.dumps(self.as_dict(), allow_nan=False)

    def to_bytes(self):
        return self.to_json().encode('utf-8')


def _absent(d, k):
    return d.get(k) is None


def _complete_target(i, target, now):
    "Check and complete one target, returns new dict in wire key order"
    if not isinstance(target, Mapping):
        # Has none of the fields
        target = {}
    for field in REQUIRED_TARGET_FIELDS:
        if _absent(target, field):
            raise ValidationError.missing_field(i, field)
    out = {}
    for k in TARGET_KEYS:
        if k in target:
            out[k] = target[k]
    # Position unknown relative to observer, assume co-located
    if _absent(target, 'src_lat'):
        out['src_lat'] = target['lat']
    if _absent(target, 'src_lon'):
        out['src_lon'] = target['lon']
    if _absent(target, 'ts'):
        out['ts'] = now
    # Keep wire order after defaults were added
    return {k: out[k] for k in TARGET_KEYS if k in out}


def _check_wire(envelope):
    "Raises jsonschema.ValidationError if output would break downstream consumers"
    jsonschema.validate(envelope.as_dict(), JSON_SCHEMA_TARGET_ENVELOPE)
    return envelope


def normalize(raw, clock=time.time):
    """
    Validate raw payload and complete it into an Envelope.
    Does not touch the passed object.
    :param raw: Mapping with a targets sequence, or an Envelope
    :param clock: Returns current Unix time in seconds, used for missing timestamps
    :return: Envelope
    :raises ValidationError: MissingPayload, MissingTargets or MissingField
    """
    if isinstance(raw, Envelope):
        raw = raw.as_dict()
    if not raw:
        raise ValidationError(ErrorKind.MISSING_PAYLOAD, "No JSON payload provided")
    targets = raw.get('targets') if isinstance(raw, Mapping) else None
    # Strings are sequences too, but not of targets
    if (not isinstance(targets, Sequence) or isinstance(targets, (str, bytes))
            or not targets):
        raise ValidationError(ErrorKind.MISSING_TARGETS,
                              'Invalid JSON structure. Must include "targets" array.')

    now = clock()
    completed = tuple(MappingProxyType(_complete_target(i, t, now)) for i, t in enumerate(targets))

    ts = now if _absent(raw, 'ts') else raw['ts']
    # Declared count is trusted, even if it disagrees with targets
    count = len(completed) if _absent(raw, 'count') else raw['count']

    logger.debug("Normalized envelope with %s target(s), count=%s", len(completed), count)
    return _check_wire(Envelope(ts, count, completed))


def build_capture_envelope(lat, lon, heading, pitch, roll, distance_m, image_url, clock=time.time):
    """
    Envelope with the single target captured on a device.
    Envelope and target share one timestamp, position rounded to 6 decimals.
    Observer is assumed to be at the target position.
    """
    now = clock()
    lat, lon = round_coord(lat), round_coord(lon)
    target = {
        'lat': lat,
        'lon': lon,
        'src_lat': lat,
        'src_lon': lon,
        'heading': heading,
        'pitch': pitch,
        'roll': roll,
        'distance_m': distance_m,
        'ts': now,
        'image': image_url,
    }
    return _check_wire(Envelope(now, 1, (MappingProxyType(target),)))
