import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Literal, Protocol

import cv2  # type: ignore
import numpy as np  # type: ignore

from backend.config import (
    CAMERA_DEVICE,
    CAMERA_FALLBACK_DEVICE,
    CAMERA_READY_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

CameraErrorKind = Literal[
    "permission-denied",
    "device-not-found",
    "device-busy",
    "unsupported-constraints",
    "unknown",
]

ERROR_MESSAGES: dict[str, str] = {
    "permission-denied": "Camera permission denied. Please allow camera access and try again.",
    "device-not-found": "No camera found on this device.",
    "device-busy": "Camera is being used by another application.",
    "unsupported-constraints": "The camera does not support the requested resolution.",
    "unknown": "Unable to access camera. Please check permissions and try again.",
}

# Which failure to report when several profiles failed differently.
_KIND_PRIORITY: tuple[str, ...] = (
    "permission-denied",
    "device-busy",
    "device-not-found",
    "unsupported-constraints",
    "unknown",
)


class CameraError(Exception):
    """One acquisition attempt failed."""

    def __init__(self, kind: CameraErrorKind, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind}: {detail}" if detail else kind)


class CameraUnavailable(Exception):
    """Every capability profile failed."""

    def __init__(self, kind: CameraErrorKind, attempts: list[tuple[str, CameraErrorKind]] | None = None):
        self.kind = kind
        self.message = ERROR_MESSAGES.get(kind, ERROR_MESSAGES["unknown"])
        self.attempts = attempts or []
        super().__init__(self.message)


@dataclass(frozen=True)
class CameraProfile:
    name: str
    device: int
    width: int = 0
    height: int = 0
    min_width: int = 0
    min_height: int = 0

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "device": self.device,
            "width": self.width,
            "height": self.height,
            "min_width": self.min_width,
            "min_height": self.min_height,
        }


DEFAULT_PROFILES: tuple[CameraProfile, ...] = (
    CameraProfile("rear-hd", CAMERA_DEVICE, 1920, 1080, min_width=1280, min_height=720),
    CameraProfile("rear-sd", CAMERA_DEVICE, 1280, 720),
    CameraProfile("any-camera", CAMERA_FALLBACK_DEVICE, 1280, 720),
    CameraProfile("any-source", CAMERA_DEVICE),
)
MINIMAL_PROFILE = CameraProfile("minimal", CAMERA_DEVICE)


class CameraStream(Protocol):
    profile: CameraProfile

    @property
    def width(self) -> int: ...

    @property
    def height(self) -> int: ...

    async def wait_ready(self, timeout: float = ...) -> None: ...

    async def start(self) -> None: ...

    def read(self) -> np.ndarray | None: ...

    def release(self) -> None: ...


class OpenCVCameraStream:
    """Live feed from a cv2.VideoCapture. Owns the device until release()."""

    def __init__(self, capture, profile: CameraProfile):
        self.profile = profile
        self._capture = capture
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def width(self) -> int:
        if self._released:
            return 0
        return int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)

    @property
    def height(self) -> int:
        if self._released:
            return 0
        return int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)

    async def wait_ready(self, timeout: float = CAMERA_READY_TIMEOUT_SECONDS) -> None:
        # equivalent of "metadata loaded": the native resolution is known
        deadline = time.monotonic() + timeout
        while self.width == 0 or self.height == 0:
            if self._released:
                raise CameraError("unknown", "stream released while starting")
            if time.monotonic() >= deadline:
                raise CameraError("unknown", "camera never reported a resolution")
            await asyncio.sleep(0.05)

    async def start(self) -> None:
        # equivalent of "playback started": a first frame comes through
        ok, _frame = await asyncio.to_thread(self._capture.read)
        if not ok:
            raise CameraError("device-busy", "camera opened but produced no frames")

    def read(self) -> np.ndarray | None:
        if self._released:
            return None
        ok, frame = self._capture.read()
        return frame if ok else None

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._capture.release()
        logger.info("Camera %s released", self.profile.name)


def open_opencv_capture(profile: CameraProfile) -> OpenCVCameraStream:
    try:
        capture = cv2.VideoCapture(profile.device)
    except PermissionError as exc:
        raise CameraError("permission-denied", str(exc))
    except cv2.error as exc:
        raise CameraError("unknown", str(exc))

    if not capture.isOpened():
        capture.release()
        raise CameraError("device-not-found", f"device {profile.device} did not open")

    if profile.width and profile.height:
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, profile.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, profile.height)

    actual_w = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
    actual_h = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
    if (profile.min_width and actual_w < profile.min_width) or (
        profile.min_height and actual_h < profile.min_height
    ):
        capture.release()
        raise CameraError(
            "unsupported-constraints",
            f"{actual_w}x{actual_h} below {profile.min_width}x{profile.min_height}",
        )

    return OpenCVCameraStream(capture, profile)


class CameraAcquirer:
    """Tries each capability profile in order and returns the first live stream."""

    def __init__(
        self,
        profiles: Sequence[CameraProfile] = DEFAULT_PROFILES,
        *,
        opener: Callable[[CameraProfile], CameraStream] = open_opencv_capture,
        minimal_profile: CameraProfile = MINIMAL_PROFILE,
    ):
        if not profiles:
            raise ValueError("At least one camera profile is required.")
        self.profiles = tuple(profiles)
        self.minimal_profile = minimal_profile
        self._opener = opener

    async def _attempt(self, profile: CameraProfile) -> CameraStream:
        try:
            return await asyncio.to_thread(self._opener, profile)
        except CameraError:
            raise
        except PermissionError as exc:
            raise CameraError("permission-denied", str(exc))
        except Exception as exc:
            raise CameraError("unknown", str(exc))

    async def acquire(self) -> CameraStream:
        attempts: list[tuple[str, CameraErrorKind]] = []

        for profile in self.profiles:
            try:
                stream = await self._attempt(profile)
            except CameraError as exc:
                logger.info("Camera profile %s failed: %s", profile.name, exc)
                attempts.append((profile.name, exc.kind))
                continue
            logger.info("Camera acquired with profile %s", profile.name)
            return stream

        if attempts and attempts[-1][1] == "unsupported-constraints":
            try:
                stream = await self._attempt(self.minimal_profile)
            except CameraError as exc:
                logger.info("Minimal camera profile failed: %s", exc)
                attempts.append((self.minimal_profile.name, exc.kind))
            else:
                logger.info("Camera acquired with minimal profile")
                return stream

        kinds = {kind for _name, kind in attempts}
        surfaced: CameraErrorKind = next(
            (k for k in _KIND_PRIORITY if k in kinds),  # type: ignore[misc]
            "unknown",
        )
        logger.warning("No camera available (%s) after %d attempts", surfaced, len(attempts))
        raise CameraUnavailable(surfaced, attempts)
