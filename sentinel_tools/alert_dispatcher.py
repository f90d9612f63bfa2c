#
# alert_dispatcher.py: webhook alert delivery
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#
# Implements alert cooldowns, batched aggregation, payload signing and webhook delivery with retries
#

"""
Alert Dispatcher Module Overview
================================

This module delivers zone and tripwire alerts to an external HTTP endpoint (webhook).

Key Features:
    - **Cooldowns**: Repeated alerts for the same rule and object class are suppressed for a configurable
      period (5 s for zones, 3 s for tripwires by default)
    - **Immediate Mode**: Each alert is posted on a background delivery thread; the caller never blocks
      and failed deliveries are logged and dropped
    - **Batched Mode**: Alerts are queued and periodically aggregated by rule and class into a single
      request; failed flushes are retried with exponential backoff
    - **Payload Signing**: Optional HMAC-SHA256 signature of the exact request body in the
      ``X-Signature`` header

Typical Usage:
    ```python
    dispatcher = AlertDispatcher(config.alerts, model="yolo11n.onnx")
    dispatcher.start()
    ...
    dispatcher.notify_zone(zone, detection)
    dispatcher.notify_tripwire(tripwire, detection, direction)
    ...
    dispatcher.stop()
    ```

Retry Policy:
    After a failed batch flush the next flush is attempted after the retry delay, which starts at
    ``retry_backoff_ms`` and doubles after every failure up to 30 s. When a flush fails after
    ``max_retries`` retries, the queued alerts are dropped, an error is logged, and the retry state
    is reset. A successful flush also resets the retry state.

Integration Notes:
    - When webhook delivery is disabled or no URL is configured, all notify calls are no-ops
    - All mutable state is guarded by a single lock; notify methods may be called from any thread
    - The clock is injectable to make cooldown behavior testable

Key Classes:
    - `AlertDispatcher`: Cooldown checking, queueing and delivery scheduling
    - `WebhookSender`: Synchronous signed HTTP POST of JSON payloads
    - `PayloadSigner`: HMAC-SHA256 payload signer
    - `CooldownTracker`: Last alert time per rule and class
    - `RetryState`: Batched delivery retry counter and delay
"""

import copy, datetime, hashlib, hmac, json, queue, threading, time
import requests
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union
from . import logger_get
from .config import AlertConfig
from .detections import Detection
from .tripwire_evaluator import Tripwire, TripwireDirection
from .zone_evaluator import Zone


# maximum retry delay in milliseconds
max_retry_delay_ms = 30000


class WebhookDeliveryError(Exception):
    """Raised when a webhook request fails or is answered with a non-2xx status."""


def utc_timestamp(t: Optional[float] = None) -> str:
    """Format time as ISO-8601 UTC string with millisecond resolution, e.g. ``2025-01-31T12:00:00.000Z``.

    Args:
        t (float, optional): POSIX time in seconds; current time when None.
    """
    dt = datetime.datetime.fromtimestamp(
        time.time() if t is None else t, tz=datetime.timezone.utc
    )
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class PayloadSigner:
    """HMAC-SHA256 signer of request bodies."""

    def __init__(self, key: str):
        self._key = key.encode("utf-8")

    def sign(self, body: bytes) -> str:
        """Return hex HMAC-SHA256 digest of `body`."""
        return hmac.new(self._key, body, hashlib.sha256).hexdigest()


class WebhookSender:
    """Posts JSON payloads to a webhook URL."""

    signature_header = "X-Signature"

    def __init__(
        self, url: str, signer: Optional[PayloadSigner] = None, timeout_s: float = 10.0
    ):
        """Constructor.

        Args:
            url (str): Webhook URL.
            signer (PayloadSigner, optional): Payload signer; requests are not signed when None.
            timeout_s (float, optional): Request timeout in seconds. Defaults to 10.
        """
        self.url = url
        self.signer = signer
        self.timeout_s = timeout_s

    def send(self, payload: dict):
        """Serialize and post payload.

        Args:
            payload (dict): JSON-serializable payload.

        Raises:
            WebhookDeliveryError: On network error or non-2xx response.
        """
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.signer is not None:
            headers[self.signature_header] = self.signer.sign(body)

        try:
            response = requests.post(
                self.url, data=body, headers=headers, timeout=self.timeout_s
            )
        except requests.RequestException as e:
            raise WebhookDeliveryError(f"Webhook request to {self.url} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise WebhookDeliveryError(
                f"Webhook {self.url} responded with HTTP {response.status_code}"
            )


class CooldownTracker:
    """Tracks last alert time per ``(rule_id, class_id)`` pair."""

    def __init__(self):
        self._last: Dict[Tuple[str, int], float] = {}

    def check_and_stamp(
        self, rule_id: str, class_id: int, now_ms: float, cooldown_ms: float
    ) -> bool:
        """Check if the cooldown for the pair has expired and, if so, stamp it with `now_ms`.

        Returns:
            True if an alert may be fired, False if the pair is still in cooldown.
        """
        key = (rule_id, class_id)
        last = self._last.get(key)
        if last is not None and now_ms - last < cooldown_ms:
            return False
        self._last[key] = now_ms
        return True


@dataclass
class RetryState:
    """Batched delivery retry state.

    Attributes:
        base_delay_ms (int): Initial retry delay.
        retry_count (int): Number of consecutive failed flushes.
        next_delay_ms (int): Delay before the next retry.
    """

    base_delay_ms: int
    retry_count: int = 0
    next_delay_ms: int = field(init=False)

    def __post_init__(self):
        self.next_delay_ms = self.base_delay_ms

    def record_failure(self):
        self.retry_count += 1
        self.next_delay_ms = min(self.next_delay_ms * 2, max_retry_delay_ms)

    def reset(self):
        self.retry_count = 0
        self.next_delay_ms = self.base_delay_ms


@dataclass(frozen=True)
class AlertEvent:
    """Queued alert.

    Attributes:
        timestamp (str): ISO-8601 UTC time of the alert.
        rule (Union[Zone, Tripwire]): Zone or tripwire which fired.
        detection (Detection): Triggering detection.
        direction (TripwireDirection, optional): Crossing direction for tripwire alerts.
    """

    timestamp: str
    rule: Union[Zone, Tripwire]
    detection: Detection
    direction: Optional[TripwireDirection] = None

    @property
    def is_tripwire(self) -> bool:
        return isinstance(self.rule, Tripwire)

    @property
    def key(self) -> Tuple[str, int]:
        return (self.rule.id, self.detection.class_id)


def zone_payload(model: str, zone: Zone, detection: Detection, timestamp: str) -> dict:
    """Build single zone alert payload."""
    return {
        "timestamp": timestamp,
        "model": model,
        "zone": {"id": zone.id, "label": zone.label},
        "detection": detection.summary(),
    }


def tripwire_payload(
    model: str,
    tripwire: Tripwire,
    detection: Detection,
    direction: TripwireDirection,
    timestamp: str,
) -> dict:
    """Build single tripwire alert payload."""
    return {
        "timestamp": timestamp,
        "model": model,
        "event": "tripwire",
        "tripwire": {
            "id": tripwire.id,
            "label": tripwire.label,
            "direction": tripwire.direction.value,
            "firedDirection": direction.value,
        },
        "detection": detection.summary(),
    }


def event_payload(model: str, event: AlertEvent) -> dict:
    """Build single alert payload for a queued event."""
    if isinstance(event.rule, Tripwire):
        return tripwire_payload(
            model,
            event.rule,
            event.detection,
            event.direction or TripwireDirection.ANY,
            event.timestamp,
        )
    return zone_payload(model, event.rule, event.detection, event.timestamp)


def aggregate_events(events: Sequence[AlertEvent]) -> List[dict]:
    """Aggregate events by ``(rule_id, class_id)``.

    Each group reports the number of events, the maximum score, and the highest scoring event as a
    sample. Groups are ordered by first occurrence.

    Args:
        events (Sequence[AlertEvent]): Queued events.

    Returns:
        List of group dictionaries for the batched payload.
    """
    groups: Dict[Tuple[str, int], List[AlertEvent]] = {}
    for ev in events:
        groups.setdefault(ev.key, []).append(ev)

    ret: List[dict] = []
    for group in groups.values():
        best = max(group, key=lambda ev: ev.detection.score)
        first = group[0]
        entry: dict = {}
        if isinstance(first.rule, Tripwire):
            entry["event"] = "tripwire"
            entry["tripwire"] = {
                "id": first.rule.id,
                "label": first.rule.label,
                "direction": first.rule.direction.value,
            }
        else:
            entry["zone"] = {"id": first.rule.id, "label": first.rule.label}
        entry.update(
            {
                "classId": first.detection.class_id,
                "label": first.detection.label,
                "count": len(group),
                "maxScore": round(best.detection.score, 4),
                "sample": {
                    "center": best.detection.center.to_dict(),
                    "bbox": best.detection.bbox.to_dict(),
                },
            }
        )
        ret.append(entry)
    return ret


def batch_payload(model: str, events: Sequence[AlertEvent], timestamp: str) -> dict:
    """Build batched alert payload."""
    return {"timestamp": timestamp, "model": model, "events": aggregate_events(events)}


class AlertDispatcher:
    """Alert dispatcher.

    Applies cooldowns to incoming zone and tripwire alerts and delivers the surviving ones either
    immediately or in periodic batches, according to `AlertConfig`.
    """

    def __init__(
        self,
        config: AlertConfig,
        model: str,
        *,
        sender: Optional[WebhookSender] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Constructor.

        Args:
            config (AlertConfig): Alert configuration.
            model (str): Model identifier reported in payloads.
            sender (WebhookSender, optional): Payload sender; by default created from `config`
                when a webhook URL is configured.
            clock (Callable[[], float], optional): Monotonic clock in milliseconds used for cooldowns.
        """
        self.config = config
        self.model = model
        if sender is None and config.webhook_url:
            sender = WebhookSender(
                config.webhook_url,
                PayloadSigner(config.hmac_key) if config.hmac_key else None,
                config.timeout_s,
            )
        self._sender = sender
        self._clock = clock if clock is not None else _monotonic_ms

        self._lock = threading.Lock()
        self._cooldowns = CooldownTracker()
        self._queue: List[AlertEvent] = []
        self._retry = RetryState(config.retry_backoff_ms)
        self._flushing = False

        self._delivery_queue: queue.Queue = queue.Queue()
        self._delivery_thread: Optional[threading.Thread] = None
        self._flush_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def enabled(self) -> bool:
        """True if alerts are delivered anywhere."""
        return self.config.webhook_enabled and self._sender is not None

    @property
    def retry_state(self) -> RetryState:
        """Snapshot of the batched delivery retry state."""
        with self._lock:
            return copy.copy(self._retry)

    @property
    def pending(self) -> int:
        """Number of queued batched alerts."""
        with self._lock:
            return len(self._queue)

    def notify_zone(self, zone: Zone, detection: Detection) -> bool:
        """Report a detection inside a zone.

        Returns:
            True if the alert was accepted for delivery; False if it was dropped by cooldown or
            delivery is disabled.
        """
        return self._notify(
            AlertEvent(utc_timestamp(), zone, detection), self.config.zone_cooldown_ms
        )

    def notify_tripwire(
        self, tripwire: Tripwire, detection: Detection, direction: TripwireDirection
    ) -> bool:
        """Report a detection crossing a tripwire.

        Returns:
            True if the alert was accepted for delivery; False if it was dropped by cooldown or
            delivery is disabled.
        """
        return self._notify(
            AlertEvent(utc_timestamp(), tripwire, detection, direction),
            self.config.tripwire_cooldown_ms,
        )

    def _notify(self, event: AlertEvent, cooldown_ms: float) -> bool:
        if not self.enabled:
            return False

        with self._lock:
            if not self._cooldowns.check_and_stamp(
                event.rule.id, event.detection.class_id, self._clock(), cooldown_ms
            ):
                logger_get().debug(
                    f"Alert for '{event.rule.label}' / {event.detection.label} suppressed by cooldown"
                )
                return False
            if self.config.batch_enabled:
                self._queue.append(event)
                return True

        self._post(event_payload(self.model, event))
        return True

    #
    # Immediate delivery
    #

    def _post(self, payload: dict):
        """Queue payload for the background delivery thread."""
        with self._lock:
            if self._delivery_thread is None or not self._delivery_thread.is_alive():
                self._delivery_thread = threading.Thread(
                    target=self._delivery_worker, name="AlertDelivery", daemon=True
                )
                self._delivery_thread.start()
        self._delivery_queue.put(payload)

    def _delivery_worker(self):
        logger = logger_get()
        while True:
            payload = self._delivery_queue.get()
            try:
                if payload is None:
                    break
                assert self._sender is not None
                self._sender.send(payload)
            except WebhookDeliveryError as e:
                logger.warning(f"Alert dropped: {e}")
            except Exception as e:
                logger.error(f"Unexpected alert delivery error: {e}")
            finally:
                self._delivery_queue.task_done()

    def wait_pending(self):
        """Block until all immediate deliveries queued so far are done."""
        self._delivery_queue.join()

    #
    # Batched delivery
    #

    def next_flush_delay_ms(self) -> float:
        """Delay before the next batch flush: the batch window, or the retry delay after a failure."""
        with self._lock:
            if self._retry.retry_count == 0:
                return self.config.batch_window_ms
            return self._retry.next_delay_ms

    def flush(self) -> bool:
        """Deliver all queued alerts in one aggregated request.

        Alerts queued while the request is in flight stay queued for the next flush.

        Returns:
            True if there was nothing to deliver or delivery succeeded; False otherwise.
        """
        logger = logger_get()
        with self._lock:
            if self._flushing or not self._queue:
                return not self._queue
            if self._sender is None:
                self._queue.clear()
                return True
            events = list(self._queue)
            self._flushing = True

        delivered = False
        error: Optional[WebhookDeliveryError] = None
        try:
            self._sender.send(batch_payload(self.model, events, utc_timestamp()))
            delivered = True
        except WebhookDeliveryError as e:
            error = e
        finally:
            with self._lock:
                self._flushing = False
                if delivered:
                    del self._queue[: len(events)]
                    self._retry.reset()
                elif error is None:
                    pass  # unexpected exception propagates; alerts stay queued
                elif self._retry.retry_count >= self.config.max_retries:
                    del self._queue[: len(events)]
                    self._retry.reset()
                    logger.error(
                        f"Batched alert delivery failed after {self.config.max_retries} retries, "
                        f"{len(events)} alert(s) dropped: {error}"
                    )
                else:
                    self._retry.record_failure()
                    logger.warning(
                        f"Batched alert delivery failed (retry {self._retry.retry_count} of "
                        f"{self.config.max_retries} in {self._retry.next_delay_ms} ms): {error}"
                    )
        return delivered

    def _flush_worker(self):
        logger = logger_get()
        while not self._stop_event.wait(self.next_flush_delay_ms() / 1000):
            try:
                self.flush()
            except Exception as e:
                logger.error(f"Unexpected batch flush error: {e}")

    #
    # Lifecycle
    #

    def start(self):
        """Start background batch flushing; no-op in immediate mode or when already started."""
        if not self.config.batch_enabled or not self.enabled:
            return
        if self._flush_thread is not None and self._flush_thread.is_alive():
            return
        self._stop_event.clear()
        self._flush_thread = threading.Thread(
            target=self._flush_worker, name="AlertBatchFlush", daemon=True
        )
        self._flush_thread.start()

    def stop(self, flush_pending: bool = False):
        """Stop background threads.

        Args:
            flush_pending (bool, optional): Make one last attempt to deliver queued batched alerts.
        """
        self._stop_event.set()
        if self._flush_thread is not None:
            self._flush_thread.join()
            self._flush_thread = None
        if flush_pending:
            self.flush()
        if self._delivery_thread is not None:
            self._delivery_queue.put(None)
            self._delivery_thread.join()
            self._delivery_thread = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop(flush_pending=True)

    def send_test_alert(self):
        """Synchronously deliver a test payload.

        Raises:
            WebhookDeliveryError: If delivery fails.
            RuntimeError: If no webhook URL is configured.
        """
        if self._sender is None:
            raise RuntimeError("Webhook URL is not configured")
        self._sender.send(
            {"timestamp": utc_timestamp(), "model": self.model, "event": "test"}
        )


def _send_test_alert_run(args):
    """
    Send one test alert to the webhook configured in the configuration file.

    Args:
        args: argparse command line arguments
    """
    from . import environment as env
    from .config import SentinelConfig

    env.reload_env()
    cfg = SentinelConfig.load(config_file=args.config_file)
    AlertDispatcher(cfg.alerts, cfg.model.name).send_test_alert()
    print(f"Test alert delivered to {cfg.alerts.webhook_url}")


def _send_test_alert_args(parser):
    """
    Define send_test_alert subcommand arguments

    Args:
        parser: argparse parser object to be stuffed with args
    """
    parser.add_argument(
        "config_file",
        nargs="?",
        type=str,
        default=None,
        help="path to YAML configuration file; environment variables are used when omitted",
    )
    parser.set_defaults(func=_send_test_alert_run)
