import asyncio
from contextlib import asynccontextmanager

from utils.browser import PageExecutor, PlaywrightSession, format_diagnostics


class FakeSession:
    """Scripted stand-in for a Playwright page"""

    def __init__(self, navigate_error=None, close_after=None, content=None, measure_error=None):
        self.navigate_error = navigate_error
        # number of is_closed() checks after which the page reports closed
        self.close_after = close_after
        self.content = content or {"width": 1280, "height": 3000}
        self.measure_error = measure_error
        self.navigations = []
        self.resizes = []
        self.closed_checks = 0

    async def navigate(self, url, timeout):
        self.navigations.append((url, timeout))
        if self.navigate_error is not None:
            raise self.navigate_error

    def is_closed(self):
        self.closed_checks += 1
        return self.close_after is not None and self.closed_checks >= self.close_after

    async def measure_content(self):
        if self.measure_error is not None:
            raise self.measure_error
        return self.content

    async def resize(self, width, height):
        self.resizes.append((width, height))


def make_executor(session, torn_down, **kwargs):
    @asynccontextmanager
    async def open_session():
        try:
            yield session
        finally:
            torn_down.append(True)

    options = dict(navigation_timeout=1800, grace_period=0, fallback_period=0,
                   max_width=4096, max_height=16384)
    options.update(kwargs)
    return PageExecutor(open_session=open_session, **options)


class TestPageExecutor:

    def test_success_resizes_viewport_to_content(self):
        session = FakeSession(content={"width": 1500, "height": 4200})
        torn_down = []
        result = asyncio.run(make_executor(session, torn_down).execute("https://example.com"))

        assert result.success is True
        assert result.diagnostics is None
        assert session.navigations == [("https://example.com", 1800)]
        assert session.resizes == [(1500, 4200)]
        assert torn_down == [True]

    def test_viewport_is_clamped(self):
        session = FakeSession(content={"width": 10000, "height": 90000})
        result = asyncio.run(
            make_executor(session, [], max_width=2000, max_height=8000).execute("https://example.com")
        )

        assert result.success is True
        assert session.resizes == [(2000, 8000)]

    def test_page_closing_itself_skips_fallback_and_resize(self):
        session = FakeSession(close_after=1)
        result = asyncio.run(make_executor(session, []).execute("https://example.com"))

        assert result.success is True
        assert session.closed_checks == 1
        assert session.resizes == []

    def test_page_closing_during_fallback_skips_resize(self):
        session = FakeSession(close_after=2)
        result = asyncio.run(make_executor(session, []).execute("https://example.com"))

        assert result.success is True
        assert session.closed_checks == 2
        assert session.resizes == []

    def test_measurement_failure_keeps_previous_viewport(self):
        session = FakeSession(measure_error=RuntimeError("Execution context was destroyed"))
        result = asyncio.run(make_executor(session, []).execute("https://example.com"))

        assert result.success is True
        assert session.resizes == []

    def test_navigation_failure_is_reported(self):
        session = FakeSession(navigate_error=TimeoutError("Timeout 1800000ms exceeded"))
        torn_down = []
        result = asyncio.run(make_executor(session, torn_down).execute("https://example.com"))

        assert result.success is False
        assert "TimeoutError" in result.diagnostics
        assert "Timeout 1800000ms exceeded" in result.diagnostics
        assert "Traceback" in result.diagnostics
        assert torn_down == [True]

    def test_session_setup_failure_is_reported(self):
        @asynccontextmanager
        async def open_session():
            raise RuntimeError("Failed to launch browser")
            yield

        executor = PageExecutor(open_session=open_session, grace_period=0, fallback_period=0)
        result = asyncio.run(executor.execute("https://example.com"))

        assert result.success is False
        assert "Failed to launch browser" in result.diagnostics

    def test_waits_grace_and_fallback_periods(self):
        session = FakeSession()
        executor = make_executor(session, [], grace_period=0.05, fallback_period=0.05)

        loop = asyncio.new_event_loop()
        try:
            start = loop.time()
            result = loop.run_until_complete(executor.execute("https://example.com"))
            elapsed = loop.time() - start
        finally:
            loop.close()

        assert result.success is True
        assert elapsed >= 0.09


def test_format_diagnostics_includes_message_and_trace():
    try:
        raise ValueError("net::ERR_NAME_NOT_RESOLVED")
    except ValueError as e:
        text = format_diagnostics(e)

    assert text.startswith("ValueError: net::ERR_NAME_NOT_RESOLVED")
    assert "Traceback" in text


class FakePage:
    def __init__(self):
        self.handlers = {}

    def on(self, event, handler):
        self.handlers[event] = handler


class FakeDownload:
    def __init__(self, name, stall=False):
        self.suggested_filename = name
        self.stall = stall

    async def save_as(self, path):
        if self.stall:
            await asyncio.Event().wait()
        with open(path, "w") as f:
            f.write("report")


class FakeDialog:
    type = "confirm"
    message = "Leave page?"

    def __init__(self):
        self.accepted = False

    async def accept(self):
        self.accepted = True


class TestPlaywrightSession:

    def test_downloads_are_saved_to_staging_dir(self, tmp_path):
        page = FakePage()
        session = PlaywrightSession(page, str(tmp_path / "downloads"))
        session.attach_handlers()

        async def run():
            page.handlers["download"](FakeDownload("report.pdf"))
            await session.finish_downloads(timeout=5)

        asyncio.run(run())
        assert (tmp_path / "downloads" / "report.pdf").read_text() == "report"

    def test_stalled_download_does_not_block_teardown(self, tmp_path):
        page = FakePage()
        session = PlaywrightSession(page, str(tmp_path))
        session.attach_handlers()

        async def run():
            page.handlers["download"](FakeDownload("big.zip", stall=True))
            page.handlers["download"](FakeDownload("small.txt"))
            await asyncio.wait_for(session.finish_downloads(timeout=0.05), timeout=5)
            await asyncio.sleep(0.01)
            return session._downloads

        stalled, finished = asyncio.run(run())
        assert stalled.cancelled()
        assert finished.done() and not finished.cancelled()
        assert (tmp_path / "small.txt").exists()
        assert not (tmp_path / "big.zip").exists()

    def test_no_downloads(self, tmp_path):
        session = PlaywrightSession(FakePage(), str(tmp_path))
        asyncio.run(session.finish_downloads(timeout=0.05))

    def test_dialogs_are_accepted(self, tmp_path):
        page = FakePage()
        session = PlaywrightSession(page, str(tmp_path))
        session.attach_handlers()
        dialog = FakeDialog()

        asyncio.run(page.handlers["dialog"](dialog))
        assert dialog.accepted is True
