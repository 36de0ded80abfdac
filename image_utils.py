import io

from PIL import Image, UnidentifiedImageError

from config import JPEG_QUALITY, MENU_IMAGE_MAX_SIZE


def normalize_menu_image(contents, max_size=MENU_IMAGE_MAX_SIZE):
    """Re-encode an uploaded menu picture as an RGB JPEG no larger than max_size.

    Raises ValueError for data Pillow cannot read.
    """
    try:
        image = Image.open(io.BytesIO(contents))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Invalid image data: {e}") from e

    image = image.convert("RGB")
    image.thumbnail(max_size)
    out = io.BytesIO()
    image.save(out, format="JPEG", quality=JPEG_QUALITY)
    return out.getvalue()
