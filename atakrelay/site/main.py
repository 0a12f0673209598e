import json

from aiohttp import web, hdrs
from aiohttp.multipart import BodyPartReader

from ..config import Config
from ..errors import ConfigError, ErrorKind
from ..images.ingestion import CloudinaryUploader, image_part
from ..submission.service import SubmissionService, RawMessage, FormCapture
from ..utils import getLogger, run_forever

logger = getLogger('site.main')

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'POST, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type',
}

FORM_FIELDS = ('lat', 'lon', 'heading', 'pitch', 'roll', 'distance_m')

STATUS_BY_KIND = {
    ErrorKind.IMAGE_TOO_LARGE: 413,
    ErrorKind.IMAGE_UPLOAD_FAILED: 502,
    ErrorKind.CONNECT_FAILED: 502,
    ErrorKind.PUBLISH_FAILED: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.INTERNAL_ERROR: 500,
}

CHUNK_SIZE = 64 * 1024


def reject_constant(name):
    "NaN, Infinity and -Infinity are accepted by json.loads but are not JSON"
    raise ValueError("{} is not valid JSON".format(name))


def errresponse(kind, details, status=None):
    "JSON error body, status derived from kind if not given"
    kind = getattr(kind, 'value', kind)
    if status is None:
        # Everything else is a problem with the request itself
        status = STATUS_BY_KIND.get(kind, 400)
    return web.json_response({'success': False, 'error': kind, 'details': details},
                             status=status)


async def read_image_part(part, max_bytes):
    """
    Read file part, keeping little more than max_bytes in memory.
    Size counts everything that was sent.
    """
    chunks = []
    kept = size = 0
    while True:
        chunk = await part.read_chunk(CHUNK_SIZE)
        if not chunk:
            break
        size += len(chunk)
        if kept <= max_bytes:
            chunks.append(chunk)
            kept += len(chunk)
    media_type = part.headers.get(hdrs.CONTENT_TYPE, '').split(';')[0].strip()
    return image_part(b''.join(chunks), media_type, part.filename, size=size)


async def read_capture(request, max_image_bytes):
    "Stream multipart form into a FormCapture"
    fields = {}
    image = None
    reader = await request.multipart()
    while True:
        part = await reader.next()
        if part is None:
            break
        # Nested multiparts are not sent by the capture page
        if not isinstance(part, BodyPartReader):
            continue
        if part.name == 'image' and image is None:
            image = await read_image_part(part, max_image_bytes)
        elif part.name in FORM_FIELDS and part.name not in fields:
            fields[part.name] = await part.text()
    return FormCapture(fields, image)


def make_app(config, service):
    """
    Creates aiohttp app with the submission endpoints.
    :param config: config.Config
    :param service: SubmissionService
    """
    @web.middleware
    async def cors_middleware(request, handler):
        try:
            resp = await handler(request)
        except web.HTTPMethodNotAllowed:
            resp = web.json_response({'error': 'Method not allowed'}, status=405)
        resp.headers.update(CORS_HEADERS)
        return resp

    async def preflight(request):
        return web.Response(status=200)

    async def submit_target(request):
        logger.info("Processing target submission...")
        if not request.content_type.startswith('multipart/'):
            return errresponse('invalid_form', "Expected multipart form data")
        try:
            capture = await read_capture(request, config.image_max_bytes)
        except ValueError as e:
            # Broken boundaries
            logger.warning("Could not parse form: %s", e)
            return errresponse('invalid_form', "Expected multipart form data")
        res = await service.submit(capture)
        if not res.success:
            return errresponse(res.error, res.detail)
        return web.json_response({
            'success': True,
            'message': res.detail,
            'image_url': res.image_url,
            'mqtt_topic': res.topic,
        })

    async def submit_raw_json(request):
        try:
            body = await request.read()
        except web.HTTPRequestEntityTooLarge:
            return errresponse('payload_too_large',
                               "Payload exceeds {} bytes".format(config.raw_max_bytes), status=413)
        try:
            payload = None
            if body.strip():
                payload = json.loads(body.decode('utf-8'), parse_constant=reject_constant)
        except ValueError as e:
            return errresponse('invalid_json', "Invalid JSON: {}".format(e))
        res = await service.submit(RawMessage(payload))
        if not res.success:
            return errresponse(res.error, res.detail)
        return web.json_response({
            'success': True,
            'message': res.detail,
            'topic': res.topic,
            'count': res.count,
        })

    # Limits buffered bodies only, multipart forms are streamed
    app = web.Application(middlewares=[cors_middleware], client_max_size=config.raw_max_bytes)
    app.router.add_post('/api/submit-target', submit_target)
    app.router.add_route('OPTIONS', '/api/submit-target', preflight)
    app.router.add_post('/api/submit-raw-json', submit_raw_json)
    return app


def main():
    config = Config.from_env()
    try:
        images = CloudinaryUploader.from_config(config)
    except ConfigError:
        logger.exception("Image store not configured, form submissions will fail")
        images = None
    service = SubmissionService(config, images=images)
    run_forever(make_app(config, service), config.http_host, config.http_port)


if __name__=="__main__":
    main()
