#
# Put all JSON schemas here.
# This is data that gets published on the broker for downstream consumers,
# key names and presence are part of the contract.
#

# Presence checks only, values are not range checked
_present = {"not": {"type": "null"}}

JSON_SCHEMA_TARGET = {
    "title": "Target",
    "description": "One geolocated sighting",
    "type": "object",
    "properties": {
        "lat": dict(_present, description="Target latitude in degrees WGS84"),
        "lon": dict(_present, description="Target longitude in degrees WGS84"),
        "src_lat": dict(_present, description="Observer latitude, equals lat if unknown"),
        "src_lon": dict(_present, description="Observer longitude, equals lon if unknown"),
        "heading": dict(_present, description="Compass bearing in degrees 0-360"),
        "pitch": dict(_present, description="Pitch in degrees -180-180"),
        "roll": dict(_present, description="Roll in degrees -90-90"),
        "distance_m": dict(_present, description="Distance to target in meters"),
        "ts": dict(_present, description="Unix timestamp in seconds with fractional part"),
        "image": {
            "description": "URL of target image"
        }
    },
    "required": ["lat", "lon", "src_lat", "src_lon", "heading", "pitch",
                 "roll", "distance_m", "ts"],
    "additionalProperties": False
}

JSON_SCHEMA_TARGET_ENVELOPE = {
    "$schema": "http://json-schema.org/draft-04/schema",
    "title": "Target envelope",
    "description": "Batch of targets published in one message",
    "type": "object",
    "properties": {
        "ts": dict(_present, description="Batch timestamp, Unix seconds"),
        "count": dict(_present, description="Declared number of targets, not checked against targets"),
        "targets": {
            "type": "array",
            "minItems": 1,
            "items": JSON_SCHEMA_TARGET
        }
    },
    "required": ["ts", "count", "targets"],
    "additionalProperties": False
}
