"""
Local audio input handling.

Audio capture itself belongs to the host runtime; this module only describes
the handle it produces and keeps the single shared handle that every peer
negotiation reads from.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, runtime_checkable

from .. import MediaAccessError

LOG = logging.getLogger(__name__)


@runtime_checkable
class AudioTrack(Protocol):
    kind: str
    enabled: bool


class AudioHandle(Protocol):
    """A live capture from one input device."""

    @property
    def track(self) -> AudioTrack: ...

    def stop(self) -> None: ...


class MediaDevices(Protocol):
    async def acquire(self, device_id: Optional[str]) -> AudioHandle:
        """Open ``device_id`` (``None`` = default input); raise :class:`MediaAccessError` on failure."""
        ...


class LocalMedia:
    """
    Owner of the shared local audio handle.

    Peer negotiations only ever read ``handle.track``.  Replacing the handle is
    the single mutation; it happens in :meth:`acquire` under a lock, and the
    device to open is read from ``selected_device`` once the lock is held so a
    slow acquisition can never override a newer selection.
    """

    def __init__(self, devices: MediaDevices, selected_device: Optional[str] = None) -> None:
        self.devices = devices
        self.selected_device = selected_device
        self.handle: Optional[AudioHandle] = None
        self.device_id: Optional[str] = None
        self.error: Optional[str] = None
        self._muted = False
        self._lock = asyncio.Lock()

    @property
    def track(self) -> Optional[AudioTrack]:
        return self.handle.track if self.handle is not None else None

    @property
    def muted(self) -> bool:
        return self._muted

    async def acquire(self) -> Optional[AudioHandle]:
        """
        Return a handle for the selected device, reusing the current one when
        it already matches.

        On failure the previous handle is kept, ``error`` holds a descriptive
        message, and ``None`` is returned.
        """

        async with self._lock:
            device_id = self.selected_device
            if self.handle is not None and self.device_id == device_id:
                return self.handle

            try:
                handle = await self.devices.acquire(device_id)
            except MediaAccessError as exc:
                self.error = str(exc) or "Could not access microphone"
                LOG.warning("Audio input %s unavailable: %s", device_id or "default", self.error)
                return None

            previous = self.handle
            self.handle = handle
            self.device_id = device_id
            self.error = None
            handle.track.enabled = not self._muted
            if previous is not None:
                previous.stop()
            return handle

    async def switch(self, device_id: Optional[str]) -> Optional[AudioHandle]:
        """Select ``device_id`` and acquire it."""

        self.selected_device = device_id
        return await self.acquire()

    def set_muted(self, muted: bool) -> None:
        self._muted = bool(muted)
        if self.handle is not None:
            self.handle.track.enabled = not self._muted

    def release(self) -> None:
        if self.handle is not None:
            self.handle.stop()
        self.handle = None
        self.device_id = None
