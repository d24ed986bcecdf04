"""
Tests for polling page text through the debugging handle
"""

from conftest import FakeDebugHandle
from ticketscout.verification.text_check import wait_for_text


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.now += seconds


class FlakyHandle(FakeDebugHandle):
    """Fails the first evaluation, then shows the text after a few polls"""

    def __init__(self, appears_after):
        super().__init__(page_source="<html>loading</html>")
        self.appears_after = appears_after

    async def evaluate(self, expression):
        self.evaluations += 1
        if self.evaluations == 1:
            raise ConnectionError("Execution context was destroyed")
        if self.evaluations >= self.appears_after:
            return "<html>Select your seats</html>"
        return self.page_source


async def test_text_already_present():
    clock = FakeClock()
    handle = FakeDebugHandle(page_source="<h1>Select your seats</h1>")
    assert await wait_for_text(handle, "Select your seats", sleep=clock.sleep, clock=clock)
    assert handle.evaluations == 1


async def test_text_appears_after_transient_errors():
    clock = FakeClock()
    handle = FlakyHandle(appears_after=3)
    assert await wait_for_text(handle, "Select your seats", max_wait=40, interval=3, sleep=clock.sleep, clock=clock)
    assert handle.evaluations == 3
    assert clock.now == 6.0


async def test_gives_up_after_max_wait():
    clock = FakeClock()
    handle = FakeDebugHandle(page_source="<html>queue</html>")
    assert not await wait_for_text(handle, "Select your seats", max_wait=10, interval=3,
                                   sleep=clock.sleep, clock=clock)
    assert handle.evaluations == 4


async def test_gone_handle_keeps_polling_until_timeout():
    clock = FakeClock()
    handle = FakeDebugHandle()
    handle.gone = True
    assert not await wait_for_text(handle, "anything", max_wait=6, interval=3, sleep=clock.sleep, clock=clock)
    assert handle.evaluations == 2
