import logging

import cv2  # type: ignore
import numpy as np  # type: ignore

logger = logging.getLogger(__name__)

DETECTOR = cv2.QRCodeDetector()


def _to_bgr(buffer: np.ndarray) -> np.ndarray | None:
    if buffer is None or buffer.size == 0:
        return None
    if buffer.ndim == 2:
        return cv2.cvtColor(buffer, cv2.COLOR_GRAY2BGR)
    if buffer.ndim == 3 and buffer.shape[2] == 4:
        return cv2.cvtColor(buffer, cv2.COLOR_BGRA2BGR)
    if buffer.ndim == 3 and buffer.shape[2] == 3:
        return buffer
    return None


def decode_frame(buffer: np.ndarray) -> str | None:
    """
    Returns the decoded QR text, or None when the frame holds no readable code.
    A miss is normal; the next sampling tick is the retry.
    """
    frame = _to_bgr(buffer)
    if frame is None:
        return None

    try:
        data, _points, _straight = DETECTOR.detectAndDecode(frame)
    except cv2.error as exc:
        logger.debug("Decoder rejected frame: %s", exc)
        return None

    return data or None


def decode_image_bytes(data: bytes) -> tuple[str | None, bool]:
    """
    Decode an uploaded JPEG/PNG.

    Returns:
      (text|None, image_ok) where image_ok is False for unreadable image data
    """
    if not data:
        return None, False
    img_array = np.frombuffer(data, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if frame is None:
        return None, False
    return decode_frame(frame), True
