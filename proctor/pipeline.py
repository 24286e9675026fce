from __future__ import annotations

from typing import Any, List, Optional

from .collectors import Collector, GazeCollector, LivenessMonitor, ScreenPresenceCollector, VisibilityCollector
from .config import MonitorSettings
from .scheduler import Clock, Scheduler


def build_collectors(
    settings: MonitorSettings,
    session_id: str,
    scheduler: Scheduler,
    clock: Optional[Clock] = None,
    reference_image: Any = None,
) -> List[Collector]:
    """
    Collectors for one session. Browser-side signals are always wired; the
    camera, microphone and screen capture collectors only when enabled, so the
    device libraries are imported only when a device is used.
    """
    clock = clock or scheduler.clock
    collectors: List[Collector] = [VisibilityCollector(clock=clock)]

    camera = None
    if settings.camera.enabled or settings.identity.enabled:
        from .devices import CameraSource

        camera = CameraSource(settings.camera)

    if settings.camera.enabled:
        from .vision import FaceLandmarkerSource

        collectors.append(
            GazeCollector(
                FaceLandmarkerSource(camera, settings.gaze),
                settings.gaze,
                LivenessMonitor(settings.liveness),
                scheduler=scheduler,
                fps=settings.camera.fps,
                clock=clock,
            )
        )

    if settings.audio.enabled:
        from .audio import AudioLevelCollector
        from .devices import MicrophoneSource

        collectors.append(AudioLevelCollector(MicrophoneSource(settings.audio), settings.audio, scheduler, clock))

    if settings.identity.enabled:
        from .identity import IdentityVerifier
        from .vision import ImageEmbedderBackend

        collectors.append(
            IdentityVerifier(
                ImageEmbedderBackend(),
                camera,
                reference_image=reference_image,
                config=settings.identity,
                scheduler=scheduler,
                clock=clock,
            )
        )

    source = snapshots = None
    if settings.screen.capture_enabled:
        from .devices import ScreenSource, SnapshotWriter

        source = ScreenSource(settings.screen)
        snapshots = SnapshotWriter(settings.screen.snapshot_dir, settings.screen.snapshot_quality)
    collectors.append(
        ScreenPresenceCollector(
            session_id,
            source=source,
            snapshots=snapshots,
            scheduler=scheduler,
            interval=settings.screen.snapshot_interval,
            required=settings.screen.required,
            clock=clock,
        )
    )
    return collectors
