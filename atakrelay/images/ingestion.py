#
# Image hosting. The submission service only needs upload(data, media_type)
# returning an absolute URL, this module provides a Cloudinary implementation.
#

import time
import asyncio
import hashlib
from collections import namedtuple
from urllib.parse import urlsplit

import aiohttp

from ..errors import ConfigError
from ..utils import getLogger

logger = getLogger('images.ingestion')

CLOUDINARY_API_URL = "https://api.cloudinary.com"
# Limit to 1200px, let Cloudinary pick a good quality
CLOUDINARY_TRANSFORMATION = "c_limit,h_1200,q_auto:good,w_1200"

ImagePart = namedtuple('ImagePart', ['data', 'media_type', 'filename', 'size'])


def image_part(data, media_type, filename=None, size=None):
    "Convenience constructor, size defaults to length of data"
    return ImagePart(data, (media_type or '').lower(), filename,
                     len(data) if size is None else size)


class ImageIngestionError(Exception):
    "Upload did not result in a retrievable URL"


def is_absolute_url(url):
    if not isinstance(url, str):
        return False
    parts = urlsplit(url)
    return parts.scheme in ('http', 'https') and bool(parts.netloc)


def cloudinary_signature(params, api_secret):
    "SHA-1 of sorted key=value pairs joined by & with secret appended"
    to_sign = '&'.join("{}={}".format(k, params[k]) for k in sorted(params))
    return hashlib.sha1((to_sign + api_secret).encode('utf-8')).hexdigest()


class CloudinaryUploader:
    def __init__(self, cloud_name, api_key, api_secret, folder='atak_targets',
                 timeout=30.0, base_url=CLOUDINARY_API_URL, clock=time.time):
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.folder = folder
        self.timeout = timeout
        self.base_url = base_url.rstrip('/')
        self.clock = clock

    @classmethod
    def from_config(cls, config):
        missing = [n for n, v in [('CLOUDINARY_CLOUD_NAME', config.cloudinary_cloud_name),
                                  ('CLOUDINARY_API_KEY', config.cloudinary_api_key),
                                  ('CLOUDINARY_API_SECRET', config.cloudinary_api_secret)] if not v]
        if missing:
            raise ConfigError("Please define {} as env var".format(', '.join(missing)))
        return cls(config.cloudinary_cloud_name, config.cloudinary_api_key,
                   config.cloudinary_api_secret, folder=config.cloudinary_folder,
                   timeout=config.upload_timeout)

    @property
    def upload_url(self):
        return "{}/v1_1/{}/image/upload".format(self.base_url, self.cloud_name)

    def signed_params(self):
        params = {
            'folder': self.folder,
            'format': 'jpg',
            'timestamp': str(int(self.clock())),
            'transformation': CLOUDINARY_TRANSFORMATION,
        }
        params['signature'] = cloudinary_signature(params, self.api_secret)
        params['api_key'] = self.api_key
        return params

    async def upload(self, data, media_type, filename='image'):
        """
        Upload image bytes, converted to jpg by Cloudinary.
        :return: https URL of the stored image
        :raises ImageIngestionError:
        """
        form = aiohttp.FormData()
        for k, v in self.signed_params().items():
            form.add_field(k, v)
        form.add_field('file', data, content_type=media_type, filename=filename or 'image')
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.upload_url, data=form) as resp:
                    if resp.status != 200:
                        text = await resp.text()
                        logger.warning("Cloudinary upload failed, status code %s: %s", resp.status, text[:200])
                        raise ImageIngestionError("Upload failed with status {}".format(resp.status))
                    result = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ImageIngestionError("Upload timed out after {}s".format(self.timeout)) from e
        except (aiohttp.ClientError, ValueError) as e:
            raise ImageIngestionError("Upload failed: {}".format(e)) from e
        url = result.get('secure_url') if isinstance(result, dict) else None
        if not is_absolute_url(url):
            raise ImageIngestionError("No secure_url in upload response")
        logger.debug("Uploaded %s bytes to %s", len(data), url)
        return url
