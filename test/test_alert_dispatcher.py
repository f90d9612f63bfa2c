#
# test_alert_dispatcher.py: unit tests for alert dispatcher
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#
# Implements unit tests for cooldowns, batched aggregation, retry backoff, payload signing,
# webhook delivery and the test alert command
#

import hashlib, hmac, json, socket, threading, time
import pytest
import sentinel_tools
from sentinel_tools import (
    AlertConfig,
    AlertDispatcher,
    BoundingBox,
    Detection,
    PayloadSigner,
    Tripwire,
    TripwireDirection,
    WebhookDeliveryError,
    WebhookSender,
    Zone,
    utc_timestamp,
)


class RecordingSender:
    """Sender stub recording payloads; fails the first `failures` sends"""

    def __init__(self, failures: int = 0):
        self.payloads: list = []
        self.failures = failures

    def send(self, payload: dict):
        self.payloads.append(payload)
        if self.failures:
            self.failures -= 1
            raise WebhookDeliveryError("endpoint down")


class BlockingSender:
    """Sender stub holding every send until released; optionally fails"""

    def __init__(self, fail: bool = False):
        self.payloads: list = []
        self.fail = fail
        self.entered = threading.Event()
        self.release = threading.Event()

    def send(self, payload: dict):
        self.payloads.append(payload)
        self.entered.set()
        assert self.release.wait(5)
        if self.fail:
            raise WebhookDeliveryError("endpoint down")


class Clock:
    """Manually advanced millisecond clock"""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


zone = Zone("z1", "Door", ((0, 0), (100, 0), (100, 100), (0, 100)))
tripwire = Tripwire.from_dict(
    {"id": "t1", "label": "Gate", "a": [0, 0], "b": [10, 0], "direction": "a->b"}
)


def _det(score=0.9, class_id=0, cx=50.0):
    return Detection(BoundingBox(cx - 10, 40, cx + 10, 60), class_id, score, "person")


def _dispatcher(sender, clock=None, **kwargs):
    config = AlertConfig(webhook_enabled=True, **kwargs)
    return AlertDispatcher(config, "yolo11n.onnx", sender=sender, clock=clock or Clock())


def test_utc_timestamp():
    assert utc_timestamp(0) == "1970-01-01T00:00:00.000Z"
    assert utc_timestamp(1.5) == "1970-01-01T00:00:01.500Z"


def test_zone_cooldown():
    sender = RecordingSender()
    clock = Clock()
    dispatcher = _dispatcher(sender, clock)

    assert dispatcher.notify_zone(zone, _det())
    clock.now = 4000
    assert not dispatcher.notify_zone(zone, _det())
    # other class is tracked separately
    assert dispatcher.notify_zone(zone, _det(class_id=1))
    clock.now = 6000
    assert dispatcher.notify_zone(zone, _det())
    dispatcher.wait_pending()
    dispatcher.stop()

    assert len(sender.payloads) == 3


def test_tripwire_cooldown():
    sender = RecordingSender()
    clock = Clock()
    dispatcher = _dispatcher(sender, clock)

    test_cases = [
        {"time": 0, "res": True},
        {"time": 2999, "res": False},
        {"time": 3000, "res": True},
        {"time": 5000, "res": False},
        {"time": 6500, "res": True},
    ]
    for ci, case in enumerate(test_cases):
        clock.now = case["time"]
        assert (
            dispatcher.notify_tripwire(tripwire, _det(), TripwireDirection.A_TO_B)
            == case["res"]
        ), f"Case {ci} failed"
    dispatcher.wait_pending()
    dispatcher.stop()
    assert len(sender.payloads) == 3


def test_disabled():
    # no URL: silent no-op
    dispatcher = AlertDispatcher(AlertConfig(webhook_enabled=True), "m")
    assert not dispatcher.enabled
    assert not dispatcher.notify_zone(zone, _det())

    # webhook disabled
    sender = RecordingSender()
    dispatcher = AlertDispatcher(AlertConfig(webhook_enabled=False), "m", sender=sender)
    assert not dispatcher.notify_zone(zone, _det())
    assert dispatcher.flush()
    assert sender.payloads == []


def test_single_payloads():
    sender = RecordingSender()
    dispatcher = _dispatcher(sender)
    dispatcher.notify_zone(zone, _det(0.87654))
    dispatcher.notify_tripwire(tripwire, _det(), TripwireDirection.A_TO_B)
    dispatcher.wait_pending()
    dispatcher.stop()

    zone_payload, tripwire_payload = sender.payloads
    assert zone_payload["model"] == "yolo11n.onnx"
    assert zone_payload["timestamp"].endswith("Z")
    assert zone_payload["zone"] == {"id": "z1", "label": "Door"}
    assert zone_payload["detection"] == {
        "classId": 0,
        "label": "person",
        "score": 0.8765,
        "center": {"x": 50, "y": 50},
        "bbox": {"x0": 40, "y0": 40, "x1": 60, "y1": 60},
    }
    assert "event" not in zone_payload

    assert tripwire_payload["event"] == "tripwire"
    assert tripwire_payload["tripwire"] == {
        "id": "t1",
        "label": "Gate",
        "direction": "a->b",
        "firedDirection": "a->b",
    }
    assert tripwire_payload["detection"]["classId"] == 0


def test_batched_aggregation():
    sender = RecordingSender()
    clock = Clock()
    dispatcher = _dispatcher(sender, clock, batch_enabled=True, zone_cooldown_ms=0)

    for score, cx in [(0.3, 30), (0.6, 60), (0.45, 45)]:
        assert dispatcher.notify_zone(zone, _det(score, cx=cx))
        clock.now += 100
    dispatcher.notify_zone(zone, _det(0.5, class_id=2))
    dispatcher.notify_tripwire(tripwire, _det(0.7), TripwireDirection.A_TO_B)
    assert dispatcher.pending == 5
    assert sender.payloads == []

    assert dispatcher.flush()
    assert dispatcher.pending == 0
    assert len(sender.payloads) == 1

    events = sender.payloads[0]["events"]
    assert len(events) == 3
    assert events[0] == {
        "zone": {"id": "z1", "label": "Door"},
        "classId": 0,
        "label": "person",
        "count": 3,
        "maxScore": 0.6,
        "sample": {
            "center": {"x": 60, "y": 50},
            "bbox": {"x0": 50, "y0": 40, "x1": 70, "y1": 60},
        },
    }
    assert events[1]["count"] == 1 and events[1]["classId"] == 2
    assert events[2]["event"] == "tripwire"
    assert events[2]["tripwire"] == {"id": "t1", "label": "Gate", "direction": "a->b"}
    assert "zone" not in events[2]

    # nothing queued: nothing sent
    assert dispatcher.flush()
    assert len(sender.payloads) == 1


def test_batched_retry_backoff():
    sender = RecordingSender(failures=3)
    dispatcher = _dispatcher(
        sender, batch_enabled=True, batch_window_ms=1500, retry_backoff_ms=1500
    )
    dispatcher.notify_zone(zone, _det())
    assert dispatcher.next_flush_delay_ms() == 1500

    for expected_delay in [3000, 6000, 12000]:
        assert not dispatcher.flush()
        assert dispatcher.retry_state.next_delay_ms == expected_delay
        assert dispatcher.next_flush_delay_ms() == expected_delay
        assert dispatcher.pending == 1

    assert dispatcher.flush()
    assert dispatcher.retry_state.retry_count == 0
    assert dispatcher.retry_state.next_delay_ms == 1500
    assert dispatcher.next_flush_delay_ms() == 1500
    assert dispatcher.pending == 0
    # every attempt carried the retained event
    assert [len(p["events"]) for p in sender.payloads] == [1, 1, 1, 1]


def test_batched_retry_delay_cap():
    sender = RecordingSender(failures=10)
    dispatcher = _dispatcher(
        sender, batch_enabled=True, retry_backoff_ms=10000, max_retries=10
    )
    dispatcher.notify_zone(zone, _det())
    delays = []
    for _ in range(3):
        dispatcher.flush()
        delays.append(dispatcher.retry_state.next_delay_ms)
    assert delays == [20000, 30000, 30000]


def test_batched_retry_exhaustion():
    sender = RecordingSender(failures=10)
    dispatcher = _dispatcher(sender, batch_enabled=True, max_retries=2)
    dispatcher.notify_zone(zone, _det())

    assert not dispatcher.flush()
    assert not dispatcher.flush()
    assert dispatcher.pending == 1
    assert dispatcher.retry_state.retry_count == 2

    # retries exhausted: queue dropped and retry state reset
    assert not dispatcher.flush()
    assert dispatcher.pending == 0
    assert dispatcher.retry_state.retry_count == 0
    assert dispatcher.retry_state.next_delay_ms == 1500


def test_batched_flush_in_flight():
    test_cases = [
        # alert queued during a successful flush stays for the next flush
        {"fail": False, "delivered": True, "pending": 1, "retry_count": 0},
        # failed flush keeps both the sent and the newly queued alert
        {"fail": True, "delivered": False, "pending": 2, "retry_count": 1},
    ]

    for ci, case in enumerate(test_cases):
        sender = BlockingSender(fail=case["fail"])
        dispatcher = _dispatcher(sender, batch_enabled=True)
        dispatcher.notify_zone(zone, _det())

        result: dict = {}
        flusher = threading.Thread(
            target=lambda: result.update(delivered=dispatcher.flush())
        )
        flusher.start()
        assert sender.entered.wait(5), f"Case {ci} failed"

        assert dispatcher.notify_zone(zone, _det(class_id=1)), f"Case {ci} failed"
        # concurrent flush is refused while a request is in flight
        assert not dispatcher.flush(), f"Case {ci} failed"
        assert len(sender.payloads) == 1, f"Case {ci} failed"

        sender.release.set()
        flusher.join(5)
        assert not flusher.is_alive(), f"Case {ci} failed"

        assert result["delivered"] == case["delivered"], f"Case {ci} failed"
        assert dispatcher.pending == case["pending"], f"Case {ci} failed"
        assert dispatcher.retry_state.retry_count == case["retry_count"], f"Case {ci} failed"
        assert len(sender.payloads[0]["events"]) == 1, f"Case {ci} failed"

        # the next flush carries whatever is still queued
        sender.fail = False
        assert dispatcher.flush(), f"Case {ci} failed"
        assert [e["classId"] for e in sender.payloads[-1]["events"]] == (
            [1] if not case["fail"] else [0, 1]
        ), f"Case {ci} failed"
        assert dispatcher.pending == 0, f"Case {ci} failed"


def test_send_test_alert(webhook_server, temp_dir, monkeypatch, capsys):
    handler, url = webhook_server
    monkeypatch.setenv("TEST_MODE", "1")  # keep env files out of the way

    # no webhook URL configured
    with pytest.raises(RuntimeError):
        AlertDispatcher(AlertConfig(webhook_enabled=True), "m").send_test_alert()

    path = temp_dir / "sentinel.yaml"
    path.write_text(f"alerts:\n  webhook_url: {url}\n  hmac_key: secret\n")

    sentinel_tools._command_entrypoint(f"send_test_alert {path}")
    assert url in capsys.readouterr().out

    assert len(handler.received) == 1
    request = handler.received[0]
    assert request["signature"] == hmac.new(
        b"secret", request["body"], hashlib.sha256
    ).hexdigest()
    payload = json.loads(request["body"])
    assert payload["event"] == "test"
    assert payload["model"] == "yolo11n.onnx"
    assert payload["timestamp"].endswith("Z")

    # endpoint failure surfaces to the caller
    handler.status_codes = [500]
    with pytest.raises(WebhookDeliveryError):
        sentinel_tools._command_entrypoint(f"send_test_alert {path}")


def test_payload_signer():
    body = b'{"a":1}'
    expected = hmac.new(b"secret", body, hashlib.sha256).hexdigest()
    assert PayloadSigner("secret").sign(body) == expected
    assert PayloadSigner("other").sign(body) != expected


def test_webhook_delivery(webhook_server):
    handler, url = webhook_server

    config = AlertConfig(webhook_enabled=True, webhook_url=url, hmac_key="secret")
    dispatcher = AlertDispatcher(config, "yolov10n.onnx")
    assert dispatcher.notify_zone(zone, _det())
    dispatcher.wait_pending()
    dispatcher.stop()

    assert len(handler.received) == 1
    request = handler.received[0]
    assert request["path"] == "/webhook"
    assert request["content_type"] == "application/json"
    assert request["signature"] == hmac.new(
        b"secret", request["body"], hashlib.sha256
    ).hexdigest()
    payload = json.loads(request["body"])
    assert payload["model"] == "yolov10n.onnx"
    assert payload["zone"]["label"] == "Door"

    # unsigned when no key is configured
    WebhookSender(url).send({"a": 1})
    assert handler.received[1]["signature"] is None


def test_webhook_errors(webhook_server):
    handler, url = webhook_server

    handler.status_codes = [500]
    with pytest.raises(WebhookDeliveryError):
        WebhookSender(url).send({"a": 1})

    # immediate mode drops failed deliveries without raising
    handler.status_codes = [503]
    config = AlertConfig(webhook_enabled=True, webhook_url=url)
    dispatcher = AlertDispatcher(config, "m")
    assert dispatcher.notify_zone(zone, _det())
    dispatcher.wait_pending()
    dispatcher.stop()
    assert len(handler.received) == 2

    # connection refused
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    with pytest.raises(WebhookDeliveryError):
        WebhookSender(f"http://127.0.0.1:{port}/webhook", timeout_s=2).send({"a": 1})


def test_batched_background_flush(webhook_server):
    handler, url = webhook_server

    config = AlertConfig(
        webhook_enabled=True, webhook_url=url, batch_enabled=True, batch_window_ms=50
    )
    dispatcher = AlertDispatcher(config, "m")
    dispatcher.notify_zone(zone, _det(0.5))
    dispatcher.notify_zone(zone, _det(0.5, class_id=1))
    with dispatcher:
        deadline = time.time() + 5
        while not handler.received and time.time() < deadline:
            time.sleep(0.01)

    assert len(handler.received) == 1
    payload = json.loads(handler.received[0]["body"])
    assert [e["classId"] for e in payload["events"]] == [0, 1]
