import os
from datetime import datetime

import pytest

import scheduler
from conftest import make_png
from models import (
    ByosAuthConfig,
    ByosHanamiConfig,
    DitheringConfig,
    ScheduleCrop,
    ScheduleInput,
    ScheduleUpdate,
    TokenResponse,
    Viewport,
    WebhookFormatConfig,
)
from schedule_store import ScheduleStore
from scheduler import CaptureScheduler, ScheduleExecutor, build_request, safe_file_name
from webhook_delivery import DeliveryResult, WebhookError


class FakeCapture:
    def __init__(self, *failures):
        self.failures = list(failures)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if self.failures:
            raise self.failures.pop(0)
        return make_png(8, 8)


@pytest.fixture
def store(tmp_path):
    return ScheduleStore(str(tmp_path / "schedules.json"))


@pytest.fixture
def sleeps():
    return []


def make_executor(store, tmp_path, capture, sleeps):
    return ScheduleExecutor(capture, store, str(tmp_path / "output"), retry_delay_s=5.0, sleep=sleeps.append)


def test_build_request_for_dashboard_schedule(store):
    schedule = store.create(ScheduleInput(
        name="Kitchen",
        dashboard_path="/lovelace/kitchen",
        target_url="https://ignored.example.com",
        viewport=Viewport(width=600, height=448),
        crop=ScheduleCrop(enabled=False, x=1, y=2, width=100, height=100),
        dithering=DitheringConfig(enabled=False, palette="bw"),
        wait=1500,
        rotate=90,
    ))

    request = build_request(schedule)

    assert request.page_path == "/lovelace/kitchen"
    assert request.target_url is None
    assert request.crop is None
    assert request.dithering is None
    assert request.extra_wait == 1500
    assert request.rotate == 90


def test_build_request_for_external_schedule(store):
    schedule = store.create(ScheduleInput(
        name="Weather",
        ha_mode=False,
        target_url="https://weather.example.com/today",
        crop=ScheduleCrop(enabled=True, x=10, y=20, width=300, height=200),
        dithering=DitheringConfig(enabled=True, palette="gray-16"),
    ))

    request = build_request(schedule)

    assert request.target_url == "https://weather.example.com/today"
    assert (request.crop.x, request.crop.y, request.crop.width, request.crop.height) == (10, 20, 300, 200)
    assert request.dithering.palette == "gray-16"


def test_build_request_ignores_empty_crop(store):
    schedule = store.create(ScheduleInput(name="x", crop=ScheduleCrop(enabled=True, width=0, height=100)))
    assert build_request(schedule).crop is None


def test_safe_file_name():
    assert safe_file_name("Living Room / TV!") == "Living_Room_TV"
    assert safe_file_name("***") == "schedule"


def test_execution_saves_image(store, tmp_path, sleeps):
    schedule = store.create(ScheduleInput(name="Living Room", format="png"))
    executor = make_executor(store, tmp_path, FakeCapture(), sleeps)

    result = executor.call(schedule)

    assert result.success
    assert result.webhook is None
    saved = result.saved_path
    assert os.path.basename(saved).startswith("Living_Room_")
    assert saved.endswith(".png")
    with open(saved, 'rb') as f:
        assert f.read() == make_png(8, 8)


def test_network_errors_are_retried(store, tmp_path, sleeps):
    schedule = store.create(ScheduleInput(name="retry"))
    capture = FakeCapture(ConnectionError("reset"), RuntimeError("net::ERR_CONNECTION_REFUSED at http://ha"))
    executor = make_executor(store, tmp_path, capture, sleeps)

    result = executor.call(schedule)

    assert result.success
    assert len(capture.requests) == 3
    assert sleeps == [5.0, 5.0]


def test_retries_are_bounded(store, tmp_path, sleeps):
    schedule = store.create(ScheduleInput(name="down"))
    capture = FakeCapture(*[ConnectionError("ECONNREFUSED")] * 5)
    executor = make_executor(store, tmp_path, capture, sleeps)

    result = executor.call(schedule)

    assert not result.success
    assert "ECONNREFUSED" in result.error
    assert len(capture.requests) == 3
    assert len(sleeps) == 2


def test_other_errors_fail_without_retry(store, tmp_path, sleeps):
    schedule = store.create(ScheduleInput(name="broken"))
    capture = FakeCapture(ValueError("bad image"))
    executor = make_executor(store, tmp_path, capture, sleeps)

    result = executor.call(schedule)

    assert not result.success
    assert result.error == "bad image"
    assert sleeps == []


def test_webhook_failure_keeps_capture_successful(store, tmp_path, sleeps, monkeypatch):
    def failing_upload(*args, **kwargs):
        raise WebhookError("HTTP 500: Internal Server Error", status_code=500)

    monkeypatch.setattr(scheduler, "upload_to_webhook", failing_upload)
    schedule = store.create(ScheduleInput(name="hook", webhook_url="https://hooks.example.com/x"))

    result = make_executor(store, tmp_path, FakeCapture(), sleeps).call(schedule)

    assert result.success
    assert result.webhook.attempted and not result.webhook.success
    assert result.webhook.status_code == 500


def test_webhook_success_is_reported(store, tmp_path, sleeps, monkeypatch):
    calls = []

    def upload(url, image, fmt, **kwargs):
        calls.append((url, fmt, kwargs["webhook_headers"]))
        return DeliveryResult(True, 200, "OK")

    monkeypatch.setattr(scheduler, "upload_to_webhook", upload)
    schedule = store.create(ScheduleInput(name="hook", format="bmp", webhook_url="https://hooks.example.com/x",
                                          webhook_headers={"X-Key": "1"}))

    result = make_executor(store, tmp_path, FakeCapture(), sleeps).call(schedule)

    assert result.webhook.success and result.webhook.status_code == 200
    assert calls == [("https://hooks.example.com/x", "bmp", {"X-Key": "1"})]


def test_refreshed_tokens_do_not_overwrite_edits_made_during_capture(store, tmp_path, sleeps, monkeypatch):
    def byos_format(label):
        auth = ByosAuthConfig(enabled=True, access_token="old-access", refresh_token="old-refresh", obtained_at=1)
        return WebhookFormatConfig(format="byos-hanami", byos_config=ByosHanamiConfig(
            label=label, name="kitchen", model_id="1", auth=auth))

    schedule = store.create(ScheduleInput(name="byos", webhook_url="https://byos.example.com/api/screens",
                                          webhook_format=byos_format("Kitchen")))

    def upload(url, image, fmt, **kwargs):
        store.update(schedule.id, ScheduleUpdate(name="renamed", webhook_format=byos_format("Hallway")))
        kwargs["on_token_refresh"](TokenResponse(access_token="new-access", refresh_token="new-refresh"))
        return DeliveryResult(True, 200, "OK")

    monkeypatch.setattr(scheduler, "upload_to_webhook", upload)
    make_executor(store, tmp_path, FakeCapture(), sleeps).call(schedule)

    stored = store.get(schedule.id)
    assert stored.name == "renamed"
    assert stored.webhook_format.byos_config.label == "Hallway"
    assert stored.webhook_format.byos_config.auth.access_token == "new-access"
    assert stored.webhook_format.byos_config.auth.refresh_token == "new-refresh"


def test_output_is_pruned_to_twice_enabled_schedules(store, tmp_path, sleeps):
    schedule = store.create(ScheduleInput(name="only"))
    output = tmp_path / "output"
    output.mkdir()
    for i in range(5):
        path = output / f"old_{i}.png"
        path.write_bytes(b"x")
        os.utime(path, (1000 + i, 1000 + i))
    (output / "notes.txt").write_text("keep me")

    make_executor(store, tmp_path, FakeCapture(), sleeps).call(schedule)

    remaining = sorted(p.name for p in output.iterdir())
    assert "notes.txt" in remaining
    images = [name for name in remaining if name.endswith(".png")]
    assert len(images) == 2
    assert "old_4.png" in images


def test_pruning_keeps_one_file_without_enabled_schedules(store, tmp_path, sleeps):
    schedule = store.create(ScheduleInput(name="off", enabled=False))
    result = make_executor(store, tmp_path, FakeCapture(), sleeps).call(schedule)
    assert os.listdir(tmp_path / "output") == [os.path.basename(result.saved_path)]


class RecordingExecutor:
    def __init__(self):
        self.called = []

    def call(self, schedule):
        self.called.append(schedule.name)
        return scheduler.ExecutionResult(success=True)


def test_due_schedules_follow_cron(store):
    store.create(ScheduleInput(name="every-5", cron="*/5 * * * *"))
    store.create(ScheduleInput(name="hourly", cron="0 * * * *"))
    store.create(ScheduleInput(name="disabled", cron="* * * * *", enabled=False))
    store.create(ScheduleInput(name="broken", cron="not a cron"))
    capture_scheduler = CaptureScheduler(store, RecordingExecutor())

    due = capture_scheduler.due_schedules(datetime(2024, 5, 1, 10, 4, 30), datetime(2024, 5, 1, 10, 5, 0))
    assert [s.name for s in due] == ["every-5"]

    due = capture_scheduler.due_schedules(datetime(2024, 5, 1, 10, 59, 45), datetime(2024, 5, 1, 11, 0, 15))
    assert [s.name for s in due] == ["every-5", "hourly"]

    assert capture_scheduler.due_schedules(datetime(2024, 5, 1, 10, 1), datetime(2024, 5, 1, 10, 1, 30)) == []


def test_run_due_advances_window(store):
    store.create(ScheduleInput(name="every-5", cron="*/5 * * * *"))
    executor = RecordingExecutor()
    capture_scheduler = CaptureScheduler(store, executor)
    capture_scheduler.last_check = datetime(2024, 5, 1, 10, 4, 45)

    capture_scheduler.run_due(datetime(2024, 5, 1, 10, 5, 15))
    capture_scheduler.run_due(datetime(2024, 5, 1, 10, 5, 45))

    assert executor.called == ["every-5"]
    assert capture_scheduler.last_check == datetime(2024, 5, 1, 10, 5, 45)


def test_execute_now(store):
    schedule = store.create(ScheduleInput(name="manual", enabled=False))
    executor = RecordingExecutor()
    capture_scheduler = CaptureScheduler(store, executor)

    assert capture_scheduler.execute_now(schedule.id).success
    assert executor.called == ["manual"]
    with pytest.raises(KeyError):
        capture_scheduler.execute_now("schedule_1_missing")


def test_start_and_stop_thread(store):
    capture_scheduler = CaptureScheduler(store, RecordingExecutor(), check_interval_s=0.01)
    capture_scheduler.start()
    assert capture_scheduler.is_running
    capture_scheduler.stop()
    assert not capture_scheduler.is_running
