import asyncio
import io
from urllib.parse import urlsplit

import pytest
from PIL import Image
from playwright.async_api import Error as PlaywrightError

from config import AppConfig


def make_png(width=40, height=30, color=(128, 128, 128), mode='RGB'):
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format='PNG')
    return buffer.getvalue()


class FakeResponse:
    def __init__(self, status=200):
        self.status = status
        self.ok = 200 <= status < 300


class FakeContext:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


class FakePage:
    """Records the browser commands a navigation session issues."""

    def __init__(self, status=200):
        self.url = "about:blank"
        self.status = status
        self.goto_error = None
        self.goto_delay = 0
        self.goto_calls = []
        self.evaluate_calls = []
        self.init_scripts = []
        self.waited_functions = []
        self.load_states = []
        self.viewports = []
        self.context = FakeContext()
        self.active = 0
        self.max_active = 0

    async def goto(self, url, timeout=None):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.goto_delay:
                await asyncio.sleep(self.goto_delay)
            if self.goto_error is not None:
                raise PlaywrightError(self.goto_error)
            self.goto_calls.append(url)
            self.url = url
            return FakeResponse(self.status)
        finally:
            self.active -= 1

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def evaluate(self, expression, arg=None):
        self.evaluate_calls.append((expression, arg))
        if isinstance(arg, str) and arg.startswith('/'):
            parts = urlsplit(self.url)
            self.url = f"{parts.scheme}://{parts.netloc}{arg}"

    async def wait_for_function(self, expression, arg=None, timeout=None, polling=None):
        self.waited_functions.append(expression)
        return True

    async def wait_for_load_state(self, state="load", timeout=None):
        self.load_states.append(state)

    async def set_viewport_size(self, size):
        self.viewports.append(size)

    async def screenshot(self, type="png", clip=None):
        if clip is not None:
            return make_png(int(clip["width"]), int(clip["height"]))
        size = self.viewports[-1] if self.viewports else {"width": 40, "height": 30}
        return make_png(size["width"], size["height"])

    def is_closed(self):
        return False

    def on(self, event, handler):
        pass

    def evaluated(self, expression):
        return [arg for expr, arg in self.evaluate_calls if expr == expression]


@pytest.fixture
def fake_page():
    return FakePage()


@pytest.fixture
def app_config(tmp_path):
    return AppConfig(
        home_assistant_url="http://homeassistant.local:8123",
        access_token="test-token",
        keep_browser_open=True,
        schedules_file=str(tmp_path / "schedules.json"),
        output_dir=str(tmp_path / "output"),
    )
