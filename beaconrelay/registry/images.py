# beaconrelay/registry/images.py
"""
Materialize inline (data: URL) listing images as files.

Structure:
    images_dir/
        <listing id>.png

The file name is derived from the listing's numeric id, so repeated
submissions of the same listing never rewrite storage.
"""

import base64
import binascii
import logging
from pathlib import Path
from urllib.parse import unquote_to_bytes

from ..errors import ValidationError

logger = logging.getLogger(__name__)


def is_inline(image: str) -> bool:
    return image.startswith("data:")


def decode_data_url(data_url: str) -> bytes:
    """
    Decode a data: URL payload.

    Raises:
        ValidationError: not a well-formed data URL
    """
    if not is_inline(data_url) or "," not in data_url:
        raise ValidationError("Malformed data URL")
    header, payload = data_url[len("data:"):].split(",", 1)
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError(f"Invalid base64 image data: {e}") from e
    return unquote_to_bytes(payload)


class ImageMaterializer:
    """
    Stores inline images and returns the URL they are served from.

    Args:
        images_dir: Directory files are written to
        public_base: Externally reachable root, e.g. https://relay.example.com
    """

    def __init__(self, images_dir: Path | str, public_base: str):
        self.images_dir = Path(images_dir)
        self.images_dir.mkdir(parents=True, exist_ok=True)
        self.public_base = public_base.rstrip("/")

    def filename_for(self, listing_identity: str) -> str:
        """Derive the file name from the trailing id segment of the identity."""
        listing_id = listing_identity.rstrip("/").rsplit("/", 1)[-1]
        return f"{listing_id}.png"

    def materialize(self, listing_identity: str, image: str) -> str:
        """
        Return a URL for ``image``, writing inline payloads to disk.

        Remote URLs are returned unchanged.
        """
        if not is_inline(image):
            return image

        filename = self.filename_for(listing_identity)
        path = self.images_dir / filename
        url = f"{self.public_base}/images/{filename}"
        if path.exists():
            return url

        data = decode_data_url(image)
        path.write_bytes(data)
        logger.debug(f"Stored image for {listing_identity} at {path}")
        return url
