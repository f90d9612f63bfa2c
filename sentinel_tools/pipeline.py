#
# pipeline.py: per-frame detection and rule evaluation pipeline
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#
# Implements the frame pipeline (decode, suppress, normalize, evaluate) and the frame loop driving it
#

"""
Pipeline Module Overview
========================

This module ties the detection stages together. For every frame, `FramePipeline.process_frame()`
runs:

    raw tensor -> decode -> non-maximum suppression -> normalize -> zone evaluation
                                                                 -> association -> tripwire evaluation

and forwards zone hits and tripwire crossings to an optional `AlertDispatcher`.
`FrameLoop` drives the pipeline from a frame source, optionally capping the frame rate.

Key Features:
    - **Frame Isolation**: A frame whose tensor cannot be decoded is skipped; previous-frame detections
      used for association are kept, so the next frame proceeds normally
    - **Recent Alerts**: The five most recent zone alert lines are kept, newest first
    - **Cooperative Stop**: `FrameLoop.stop()` clears a liveness flag checked between iterations;
      an iteration in progress always completes
    - **Error Containment**: Exceptions raised while processing a single frame are logged and do not
      stop the frame loop

Typical Usage:
    ```python
    cfg = SentinelConfig.load(config_file="sentinel.yaml")
    dispatcher = AlertDispatcher(cfg.alerts, cfg.model.name)
    pipeline = FramePipeline.from_config(cfg, dispatcher)
    with dispatcher:
        FrameLoop(pipeline, frames, zones=zones, tripwires=tripwires, cap_fps=cfg.frame_loop.cap_fps).run()
    ```

Key Classes:
    - `FrameResult`: Results of processing one frame
    - `FramePipeline`: Stateful per-frame processing
    - `FrameLoop`: Frame source driver
"""

import threading, time
from dataclasses import dataclass, field
from typing import (
    Callable,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)
from . import logger_get
from .alert_dispatcher import AlertDispatcher
from .config import SentinelConfig
from .detections import Detection, coco_classes, normalize_detections
from .object_associator import associate, max_association_distance
from .tensor_decoder import (
    DecodeError,
    ModelInfo,
    decode_tensor,
    default_confidence_threshold,
    default_iou_threshold,
    suppress_candidates,
)
from .tripwire_evaluator import Tripwire, TripwireCrossing, TripwireEvaluator
from .zone_evaluator import DetectionFilter, Zone, ZoneEvaluator, ZoneHit


# number of recent zone alert lines to keep
recent_alerts_depth = 5


@dataclass
class FrameResult:
    """Results of processing one frame.

    Attributes:
        detections (List[Detection]): Normalized detections; empty for skipped frames.
        zone_hits (List[ZoneHit]): Detections found inside zones.
        crossings (List[TripwireCrossing]): Tripwire crossings.
        skipped (bool): True if the frame could not be decoded.
        error (str, optional): Decode error message for skipped frames.
    """

    detections: List[Detection] = field(default_factory=list)
    zone_hits: List[ZoneHit] = field(default_factory=list)
    crossings: List[TripwireCrossing] = field(default_factory=list)
    skipped: bool = False
    error: Optional[str] = None


class FramePipeline:
    """Per-frame detection pipeline.

    Holds the state carried between frames: previous-frame detections for association and the
    list of recent zone alert lines.
    """

    def __init__(
        self,
        model: ModelInfo,
        display_size: Tuple[int, int],
        *,
        class_labels: Optional[Sequence[str]] = None,
        detection_filter: Optional[DetectionFilter] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        confidence_threshold: float = default_confidence_threshold,
        iou_threshold: float = default_iou_threshold,
    ):
        """Constructor.

        Args:
            model (ModelInfo): Model description selecting the tensor layout and input size.
            display_size (Tuple[int, int]): Display size ``(width, height)``.
            class_labels (Sequence[str], optional): Class label table; defaults to the COCO labels.
            detection_filter (DetectionFilter, optional): Filter applied before zone and tripwire
                evaluation.
            dispatcher (AlertDispatcher, optional): Alert dispatcher receiving zone hits and crossings.
            confidence_threshold (float, optional): Decode-time confidence threshold.
            iou_threshold (float, optional): Non-maximum suppression IoU threshold.
        """
        self.model = model
        self.display_size = display_size
        self.class_labels: Sequence[str] = (
            class_labels if class_labels is not None else coco_classes
        )
        self.confidence_threshold = confidence_threshold
        self.iou_threshold = iou_threshold

        detection_filter = (
            detection_filter if detection_filter is not None else DetectionFilter()
        )
        self.zone_evaluator = ZoneEvaluator(
            detection_filter, dispatcher.notify_zone if dispatcher else None
        )
        self.tripwire_evaluator = TripwireEvaluator(
            detection_filter, dispatcher.notify_tripwire if dispatcher else None
        )

        self._previous: List[Detection] = []
        self._recent_alerts: List[str] = []

    @classmethod
    def from_config(
        cls, config: SentinelConfig, dispatcher: Optional[AlertDispatcher] = None
    ) -> "FramePipeline":
        """Create pipeline from configuration.

        Raises:
            ConfigError: If the model cannot be resolved.
        """
        return cls(
            config.model.model_info(),
            config.frame_loop.display_size,
            class_labels=config.model.labels,
            detection_filter=config.detection.to_filter(),
            dispatcher=dispatcher,
            confidence_threshold=config.model.confidence_threshold,
            iou_threshold=config.model.iou_threshold,
        )

    @property
    def previous_detections(self) -> List[Detection]:
        """Detections of the last successfully processed frame."""
        return list(self._previous)

    @property
    def recent_alerts(self) -> List[str]:
        """Most recent zone alert lines, newest first."""
        return list(self._recent_alerts)

    def reset(self):
        """Forget previous-frame detections and recent alerts."""
        self._previous = []
        self._recent_alerts = []

    def process_frame(
        self,
        buffer,
        shape: Sequence[int],
        zones: Sequence[Zone] = (),
        tripwires: Sequence[Tripwire] = (),
    ) -> FrameResult:
        """Process one frame of model output.

        Args:
            buffer: Flat model output buffer.
            shape (Sequence[int]): Model output tensor shape.
            zones (Sequence[Zone], optional): Zones to evaluate.
            tripwires (Sequence[Tripwire], optional): Tripwires to evaluate.

        Returns:
            Frame processing results.
        """
        try:
            candidates = decode_tensor(
                buffer,
                shape,
                self.model.layout,
                num_classes=len(self.class_labels),
                confidence_threshold=self.confidence_threshold,
            )
        except DecodeError as e:
            logger_get().warning(f"Frame skipped: {e}")
            return FrameResult(skipped=True, error=str(e))

        detections = normalize_detections(
            suppress_candidates(candidates, self.iou_threshold),
            self.model.input_size,
            self.display_size,
            self.class_labels,
            round_coordinates=self.model.layout.rounds_coordinates,
        )

        zone_hits = self.zone_evaluator.evaluate(zones, detections)
        if zone_hits:
            self._recent_alerts = [h.message for h in zone_hits] + self._recent_alerts
            del self._recent_alerts[recent_alerts_depth:]

        crossings: List[TripwireCrossing] = []
        if tripwires:
            pairs = associate(
                detections, self._previous, max_association_distance(*self.display_size)
            )
            crossings = self.tripwire_evaluator.evaluate(pairs, tripwires)

        self._previous = list(detections)
        return FrameResult(detections, zone_hits, crossings)


class FrameLoop:
    """Drives a `FramePipeline` from a source of model outputs."""

    def __init__(
        self,
        pipeline: FramePipeline,
        frames: Iterable[Tuple[object, Sequence[int]]],
        *,
        zones: Union[Sequence[Zone], Callable[[], Sequence[Zone]]] = (),
        tripwires: Union[Sequence[Tripwire], Callable[[], Sequence[Tripwire]]] = (),
        cap_fps: Optional[float] = None,
        on_result: Optional[Callable[[FrameResult], None]] = None,
    ):
        """Constructor.

        Args:
            pipeline (FramePipeline): Pipeline to drive.
            frames (Iterable): Source of ``(buffer, shape)`` model outputs.
            zones (Union[Sequence[Zone], Callable], optional): Zones, or a callable returning the
                current zones for each frame.
            tripwires (Union[Sequence[Tripwire], Callable], optional): Tripwires, or a callable
                returning the current tripwires for each frame.
            cap_fps (float, optional): Maximum frame rate; None or 0 means unlimited.
            on_result (Callable, optional): Callback receiving each `FrameResult`.
        """
        self.pipeline = pipeline
        self._frames = frames
        self._zones = zones
        self._tripwires = tripwires
        self.cap_fps = cap_fps
        self.on_result = on_result
        self.frame_count = 0
        self._running = False
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def run(self):
        """Run the loop on the calling thread until the frame source is exhausted or `stop()` is called."""
        self._running = True
        self._loop()

    def _loop(self):
        logger = logger_get()
        frames = iter(self._frames)
        try:
            while self._running:
                if self.cap_fps:
                    time.sleep(1.0 / self.cap_fps)

                try:
                    buffer, shape = next(frames)
                except StopIteration:
                    break

                try:
                    zones = self._zones() if callable(self._zones) else self._zones
                    tripwires = (
                        self._tripwires() if callable(self._tripwires) else self._tripwires
                    )
                    result = self.pipeline.process_frame(buffer, shape, zones, tripwires)
                    if self.on_result is not None:
                        self.on_result(result)
                except Exception as e:
                    logger.error(f"Frame {self.frame_count} processing failed: {e}")
                self.frame_count += 1
        finally:
            self._running = False

    def start(self):
        """Run the loop on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._running = True
        self._thread = threading.Thread(target=self._loop, name="FrameLoop", daemon=True)
        self._thread.start()

    def stop(self, wait: bool = True):
        """Request the loop to stop after the current iteration.

        Args:
            wait (bool, optional): Wait for the background thread to finish.
        """
        self._running = False
        if wait and self._thread is not None:
            if self._thread is not threading.current_thread():
                self._thread.join()
            self._thread = None
