#
# Entry point for target submissions. Whatever happens, submit() returns
# exactly one SubmitResult, success or typed failure.
#

import time
from collections import namedtuple

from ..broker.publisher import BrokerPublisher
from ..errors import ErrorKind, RelayError, ValidationError, SubmissionError
from ..images.ingestion import ImageIngestionError, is_absolute_url
from ..messages.normalizer import normalize, build_capture_envelope
from ..utils import getLogger, parse_float

logger = getLogger('submission.service')

# Already batch shaped payload, e.g. parsed JSON body
RawMessage = namedtuple('RawMessage', ['payload'])
# Form fields as sent by the capture page plus one images.ingestion.ImagePart
FormCapture = namedtuple('FormCapture', ['fields', 'image'])

_result_fields = ['success', 'topic', 'count', 'published', 'image_url', 'error', 'detail']


class SubmitResult(namedtuple('SubmitResult', _result_fields)):
    __slots__ = ()

    @classmethod
    def ok(cls, topic, count, published, image_url=None, detail=None):
        return cls(True, topic, count, published, image_url, None, detail)

    @classmethod
    def failed(cls, kind, detail):
        return cls(False, None, None, 0, None, ErrorKind(kind), detail)


class SubmissionService:
    def __init__(self, config, publisher=None, images=None, clock=time.time):
        """
        :param config: config.Config
        :param publisher: BrokerPublisher or compatible, built from config if None
        :param images: Object with async upload(data, media_type, filename), needed for form captures
        :param clock: Returns Unix time in seconds
        """
        self.config = config
        self.publisher = publisher or BrokerPublisher(config)
        self.images = images
        self.clock = clock

    async def submit(self, request):
        "Handle RawMessage or FormCapture, never raises"
        try:
            if isinstance(request, RawMessage):
                return await self._submit_raw(request)
            elif isinstance(request, FormCapture):
                return await self._submit_form(request)
            raise TypeError("Unknown request type {}".format(type(request).__name__))
        except ValidationError as e:
            logger.warning("Rejected submission: %s", e.detail)
            return SubmitResult.failed(e.kind, e.detail)
        except RelayError as e:
            logger.warning("Submission failed (%s): %s", e.kind.value, e.detail)
            return SubmitResult.failed(e.kind, e.detail)
        except Exception:
            # Automatically prints exception information
            logger.exception("Unexpected error while handling submission")
            return SubmitResult.failed(ErrorKind.INTERNAL_ERROR, "Internal server error")

    async def _publish(self, envelope):
        topic = self.config.topic
        await self.publisher.publish(topic, envelope, qos=self.config.qos,
                                     deadline=self.config.publish_timeout)
        logger.info("Published envelope on %s, count=%s, targets=%s",
                    topic, envelope.count, len(envelope.targets))
        return topic

    async def _submit_raw(self, request):
        envelope = normalize(request.payload, clock=self.clock)
        topic = await self._publish(envelope)
        n = len(envelope.targets)
        return SubmitResult.ok(topic, envelope.count, n,
                               detail="Published {} target(s) to MQTT".format(n))

    def _check_capture(self, request):
        "All checks that can be done before any network call"
        fields = request.fields or {}
        lat = parse_float(fields.get('lat'))
        lon = parse_float(fields.get('lon'))
        if lat is None or lon is None:
            raise ValidationError(ErrorKind.MISSING_LOCATION, "Missing or invalid lat/lon")
        image = request.image
        if image is None or not image.size:
            raise ValidationError(ErrorKind.MISSING_IMAGE, "No image file provided")
        allowed = self.config.image_types
        if (image.media_type or '').lower() not in allowed:
            raise ValidationError(ErrorKind.INVALID_IMAGE_TYPE,
                                  "Invalid image type. Allowed: {}".format(', '.join(allowed)))
        if image.size > self.config.image_max_bytes:
            raise ValidationError(ErrorKind.IMAGE_TOO_LARGE,
                                  "Image exceeds maximum size of {} bytes".format(self.config.image_max_bytes))
        # Orientation and distance default to 0 if not given or not numeric
        orientation = {k: parse_float(fields.get(k), 0.0)
                       for k in ('heading', 'pitch', 'roll', 'distance_m')}
        return lat, lon, orientation

    async def _upload(self, image):
        if self.images is None:
            raise SubmissionError(ErrorKind.IMAGE_UPLOAD_FAILED, "Image upload failed",
                                  cause="no image store configured")
        logger.info("Uploading %s image of %s bytes...", image.media_type, image.size)
        try:
            url = await self.images.upload(image.data, image.media_type, image.filename)
        except ImageIngestionError as e:
            logger.warning("Image upload failed: %s", e)
            raise SubmissionError(ErrorKind.IMAGE_UPLOAD_FAILED, "Image upload failed", cause=e) from e
        except Exception as e:
            logger.exception("Image store raised unexpectedly")
            raise SubmissionError(ErrorKind.IMAGE_UPLOAD_FAILED, "Image upload failed", cause=e) from e
        if not is_absolute_url(url):
            logger.warning("Image store returned unusable URL %r", url)
            raise SubmissionError(ErrorKind.IMAGE_UPLOAD_FAILED, "Image upload failed")
        logger.info("Image uploaded: %s", url)
        return url

    async def _submit_form(self, request):
        lat, lon, o = self._check_capture(request)
        # URL must be known before the envelope is built
        url = await self._upload(request.image)
        envelope = build_capture_envelope(lat, lon, o['heading'], o['pitch'], o['roll'],
                                          o['distance_m'], url, clock=self.clock)
        topic = await self._publish(envelope)
        return SubmitResult.ok(topic, envelope.count, len(envelope.targets), image_url=url,
                               detail="Target submitted successfully")
