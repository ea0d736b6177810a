import numpy as np  # type: ignore


class FrameSampler:
    """
    Copies the current video frame into a single reusable raster buffer.

    The buffer is reallocated only when the stream's resolution changes;
    otherwise every sample overwrites it in place.
    """

    def __init__(self):
        self.buffer: np.ndarray | None = None
        self.samples = 0
        # consecutive reads that produced no frame while the resolution was known
        self.failed_reads = 0

    def sample(self, stream) -> np.ndarray | None:
        # resolution unknown yet: startup, not an error
        width, height = stream.width, stream.height
        if width == 0 or height == 0:
            return None

        frame = stream.read()
        if frame is None or frame.size == 0:
            self.failed_reads += 1
            return None

        self.failed_reads = 0
        if self.buffer is None or self.buffer.shape != frame.shape or self.buffer.dtype != frame.dtype:
            self.buffer = np.empty_like(frame)
        np.copyto(self.buffer, frame)
        self.samples += 1
        return self.buffer

    def reset(self) -> None:
        self.buffer = None
        self.failed_reads = 0
