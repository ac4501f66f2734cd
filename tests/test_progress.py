import pytest

from isoinstall.lib.progress import INFO_PAGES, ProgressBridge

from conftest import FakeUI


class FakeClock:
	def __init__(self) -> None:
		self.now = 100.0

	def __call__(self) -> float:
		return self.now


def test_update_composes_window(fake_ui: FakeUI) -> None:
	bridge = ProgressBridge(fake_ui)

	assert bridge.update(0.5, 0.2, 0.4, 'extracting') == pytest.approx(0.3)
	assert fake_ui.progress_updates[-1] == (pytest.approx(0.3), 'extracting')


def test_update_keeps_last_text(fake_ui: FakeUI) -> None:
	bridge = ProgressBridge(fake_ui)

	bridge.update(0, 0, 1, 'create partitions')
	bridge.update(0.5, 0, 1)

	assert fake_ui.progress_updates[-1][1] == 'create partitions'


def test_update_clamps_fraction(fake_ui: FakeUI) -> None:
	bridge = ProgressBridge(fake_ui)

	assert bridge.update(1.5, 0.5, 0.75) == pytest.approx(0.75)
	assert bridge.update(-1, 0.5, 0.75) == pytest.approx(0.5)


def test_window_never_goes_backwards(fake_ui: FakeUI) -> None:
	window = ProgressBridge(fake_ui).window(0.25, 0.5)

	reported = [window.update(frac) for frac in (0.1, 0.6, 0.3, 0.9, 0.2)]

	assert reported == sorted(reported)
	assert reported[-1] == pytest.approx(0.25 + 0.9 * 0.25)


def test_sub_window(fake_ui: FakeUI) -> None:
	window = ProgressBridge(fake_ui).window(0.5, 0.75)
	sub = window.sub(0.5, 1)

	assert sub.start == pytest.approx(0.625)
	assert sub.end == pytest.approx(0.75)
	assert sub.update(0.5) == pytest.approx(0.6875)


def test_info_pages_are_throttled(fake_ui: FakeUI) -> None:
	clock = FakeClock()
	bridge = ProgressBridge(fake_ui, min_display_time=15, clock=clock)

	bridge.update(0.1, 0, 1)
	bridge.update(0.2, 0, 1)
	assert fake_ui.pages == [INFO_PAGES[0]]

	clock.now += 16
	bridge.update(0.3, 0, 1)
	assert fake_ui.pages == INFO_PAGES[:2]


def test_info_pages_rotate(fake_ui: FakeUI) -> None:
	clock = FakeClock()
	bridge = ProgressBridge(fake_ui, min_display_time=1, clock=clock)

	for _ in range(len(INFO_PAGES) + 1):
		bridge.update(0.1, 0, 1)
		clock.now += 2

	assert fake_ui.pages == [*INFO_PAGES, INFO_PAGES[0]]


def test_no_info_pages_near_the_end(fake_ui: FakeUI) -> None:
	bridge = ProgressBridge(fake_ui, clock=FakeClock())

	bridge.update(0.95, 0, 1)

	assert fake_ui.pages == []


def test_reset_reports_completion(fake_ui: FakeUI) -> None:
	bridge = ProgressBridge(fake_ui, clock=FakeClock())

	bridge.update(0.5, 0, 1, 'configuring')
	bridge.reset()

	assert fake_ui.progress_updates[-1] == (1.0, '')
