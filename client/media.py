from __future__ import annotations

import asyncio
import fractions
import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np
import sounddevice as sd
from aiortc import MediaStreamTrack, VideoStreamTrack
from av import AudioFrame, VideoFrame

from shared.models import SessionMode

logger = logging.getLogger(__name__)

SAMPLE_RATE = 48000
CHANNELS = 1
FRAME_SAMPLES = int(SAMPLE_RATE * 0.02)  # 20ms


class MediaPermissionError(RuntimeError):
    """Camera or microphone could not be opened."""


class CameraTrack(VideoStreamTrack):
    """Webcam capture exposed as an aiortc video track."""

    def __init__(self, device_index: int = 0, *, width: int = 640, height: int = 360, fps: int = 15) -> None:
        super().__init__()
        self._width = width
        self._height = height
        self._capture = cv2.VideoCapture(device_index)
        if not self._capture.isOpened():
            self._capture.release()
            raise MediaPermissionError(f"Camera {device_index} could not be opened")
        self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        self._capture.set(cv2.CAP_PROP_FPS, max(1, fps))
        self._blank = np.zeros((height, width, 3), dtype=np.uint8)

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()
        image = await asyncio.to_thread(self._read_frame)
        frame = VideoFrame.from_ndarray(image if image is not None else self._blank, format="bgr24")
        frame.pts = pts
        frame.time_base = time_base
        return frame

    def stop(self) -> None:
        super().stop()
        if self._capture is not None:
            self._capture.release()
            self._capture = None

    def _read_frame(self) -> Optional[np.ndarray]:
        if self._capture is None:
            return None
        ret, frame = self._capture.read()
        if not ret:
            return None
        return cv2.resize(frame, (self._width, self._height))


class MicrophoneTrack(MediaStreamTrack):
    """Microphone capture via sounddevice, delivered as 20ms mono frames."""

    kind = "audio"

    def __init__(self) -> None:
        super().__init__()
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[np.ndarray] = asyncio.Queue(maxsize=50)
        self._pts = 0
        try:
            self._stream: Optional[sd.InputStream] = sd.InputStream(
                samplerate=SAMPLE_RATE,
                channels=CHANNELS,
                dtype="int16",
                blocksize=FRAME_SAMPLES,
                callback=self._capture_callback,
            )
            self._stream.start()
        except sd.PortAudioError as exc:
            raise MediaPermissionError(f"Microphone could not be opened: {exc}") from exc

    async def recv(self) -> AudioFrame:
        samples = await self._queue.get()
        frame = AudioFrame.from_ndarray(samples.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = SAMPLE_RATE
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, SAMPLE_RATE)
        self._pts += samples.shape[0]
        return frame

    def stop(self) -> None:
        super().stop()
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None

    def _capture_callback(self, indata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if status:
            logger.warning("Audio input status: %s", status)
        samples = np.array(indata, dtype=np.int16).flatten()
        self._loop.call_soon_threadsafe(self._enqueue, samples)

    def _enqueue(self, samples: np.ndarray) -> None:
        try:
            self._queue.put_nowait(samples)
        except asyncio.QueueFull:
            # Drop audio if the sender falls behind
            pass


@dataclass
class LocalMedia:
    video: Optional[MediaStreamTrack] = None
    audio: Optional[MediaStreamTrack] = None

    @property
    def tracks(self) -> list[MediaStreamTrack]:
        return [track for track in (self.audio, self.video) if track is not None]

    def stop(self) -> None:
        """Release the devices behind every local track."""
        for track in self.tracks:
            track.stop()


def acquire_local_media(mode: SessionMode, *, camera_index: int = 0) -> LocalMedia:
    """Open the devices a session mode needs; chat sessions open none."""

    media = LocalMedia()
    if mode == SessionMode.CHAT:
        return media
    try:
        media.audio = MicrophoneTrack()
        if mode == SessionMode.VIDEO:
            media.video = CameraTrack(camera_index)
    except MediaPermissionError:
        media.stop()
        raise
    logger.info("Acquired local media for %s session (%s tracks)", mode.value, len(media.tracks))
    return media
