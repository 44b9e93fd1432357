"""
Image Processor Module.

This module handles image documents (receipts photographed or scanned):
    - Image loading and integrity check
    - Orientation correction from EXIF
    - RGB conversion and size capping
    - Multi-frame TIFF pages

Supports: PNG, JPEG, TIFF, BMP, WEBP

Author: ML Engineering Team
"""

import io
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image, ImageOps, ImageSequence, UnidentifiedImageError

from config import get_config
from vat_extraction.utils.logger import get_logger
from vat_extraction.utils.exceptions import CorruptedDocumentError

# Initialize module logger
logger = get_logger(__name__)


class ImageProcessor:
    """
    Processor for image documents held in memory.

    Attributes:
        max_width: Maximum image width in pixels.
        max_height: Maximum image height in pixels.
        auto_orient: Whether to apply EXIF orientation.
        max_pages: Maximum number of frames kept from multi-page images.

    Example:
        >>> processor = ImageProcessor()
        >>> images, metadata = processor.process(png_bytes)
    """

    def __init__(
        self,
        max_width: Optional[int] = None,
        max_height: Optional[int] = None,
        auto_orient: Optional[bool] = None,
        max_pages: Optional[int] = None
    ) -> None:
        self.max_width = max_width or get_config("input.image.max_width", 2480)
        self.max_height = max_height or get_config("input.image.max_height", 3508)
        self.auto_orient = (
            auto_orient if auto_orient is not None
            else get_config("input.image.auto_orient", True)
        )
        self.max_pages = max_pages or get_config("input.max_pages", 10)

        logger.debug(
            f"ImageProcessor initialized (max_size={self.max_width}x{self.max_height})"
        )

    def process(self, data: bytes) -> Tuple[List[Image.Image], Dict[str, Any]]:
        """
        Decode and normalise an image document.

        Args:
            data: Raw image bytes.

        Returns:
            Tuple of (list of RGB PIL Images, metadata dictionary).

        Raises:
            CorruptedDocumentError: If the image cannot be decoded.
        """
        # verify() leaves the image unusable, so check on a throwaway handle
        try:
            with Image.open(io.BytesIO(data)) as unverified:
                unverified.verify()
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            logger.error(f"Image failed integrity check: {e}")
            raise CorruptedDocumentError(f"invalid image data: {e}", source="image")

        try:
            image = Image.open(io.BytesIO(data))
            metadata = {
                'format': image.format,
                'original_width': image.width,
                'original_height': image.height,
                'original_mode': image.mode,
            }

            frames = []
            for frame in ImageSequence.Iterator(image):
                frames.append(self._process_image(frame.copy()))
                if len(frames) >= self.max_pages:
                    break
        except (OSError, ValueError) as e:
            logger.error(f"Failed to decode image: {e}")
            raise CorruptedDocumentError(f"image decode failed: {e}", source="image")

        metadata['page_count'] = len(frames)
        metadata['processed_width'] = frames[0].width
        metadata['processed_height'] = frames[0].height

        logger.info(
            f"Processed image: {frames[0].width}x{frames[0].height} "
            f"(original: {metadata['original_width']}x{metadata['original_height']}, "
            f"frames: {len(frames)})"
        )
        return frames, metadata

    def _process_image(self, image: Image.Image) -> Image.Image:
        if self.auto_orient:
            image = ImageOps.exif_transpose(image)
        image = self._convert_to_rgb(image)
        return self._resize_if_needed(image)

    def _convert_to_rgb(self, image: Image.Image) -> Image.Image:
        """
        Convert image to RGB mode.

        Transparent images are flattened onto a white background.
        """
        if image.mode == 'RGB':
            return image

        if image.mode in ('RGBA', 'LA') or (image.mode == 'P' and 'transparency' in image.info):
            image = image.convert('RGBA')
            background = Image.new('RGB', image.size, (255, 255, 255))
            background.paste(image, mask=image.split()[3])
            return background

        return image.convert('RGB')

    def _resize_if_needed(self, image: Image.Image) -> Image.Image:
        width, height = image.size
        if width <= self.max_width and height <= self.max_height:
            return image

        ratio = min(self.max_width / width, self.max_height / height)
        new_size = (max(1, int(width * ratio)), max(1, int(height * ratio)))
        logger.debug(f"Resized image from {width}x{height} to {new_size[0]}x{new_size[1]}")
        return image.resize(new_size, Image.LANCZOS)
