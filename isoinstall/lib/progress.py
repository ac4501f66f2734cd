from __future__ import annotations

import time
from collections.abc import Callable

from .output import warn
from .ui.base import InstallerUI

INFO_PAGES = [
	'extract1-license.htm',
	'extract2-rulesystem.htm',
	'extract3-spam.htm',
	'extract4-virus.htm',
]

# informational pages are only rotated while the overall progress is below this
INFO_PAGE_THRESHOLD = 0.9


def compose(frac: float, start: float, end: float) -> float:
	return start + frac * (end - start)


class ProgressBridge:
	"""
	Forwards progress to the UI. Every caller reports a local fraction within
	a ``(start, end)`` window of the overall bar.
	"""

	def __init__(
		self,
		ui: InstallerUI,
		min_display_time: float = 15.0,
		pages: list[str] = INFO_PAGES,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self._ui = ui
		self._min_display_time = min_display_time
		self._pages = pages
		self._clock = clock
		self._last_display_change: float | None = None
		self._display_counter = 0
		self._text = ''

	def update(self, frac: float, start: float, end: float, text: str | None = None) -> float:
		frac = min(max(frac, 0.0), 1.0)
		res = compose(frac, start, end)

		if text is not None:
			self._text = text

		self._ui.progress(res, self._text)

		if res < INFO_PAGE_THRESHOLD:
			self.display_info()

		self._ui.process_events()
		return res

	def window(self, start: float, end: float) -> ProgressWindow:
		return ProgressWindow(self, start, end)

	def display_info(self) -> None:
		now = self._clock()
		if self._last_display_change is not None and now - self._last_display_change < self._min_display_time:
			return

		page = self._pages[self._display_counter % len(self._pages)]
		self._display_counter += 1

		try:
			self._ui.display_html(page)
		except Exception as err:
			warn(f'Unable to display {page}: {err}')

		self._last_display_change = now

	def reset(self) -> None:
		self._last_display_change = None
		self.update(1, 0, 1, '')


class ProgressWindow:
	"""
	A sub-range of the overall progress. Reports within one window never go
	backwards, a smaller fraction than the last one is raised to it.
	"""

	def __init__(self, bridge: ProgressBridge, start: float, end: float) -> None:
		self._bridge = bridge
		self.start = start
		self.end = end
		self._last = 0.0

	def update(self, frac: float, text: str | None = None) -> float:
		self._last = max(self._last, min(max(frac, 0.0), 1.0))
		return self._bridge.update(self._last, self.start, self.end, text)

	def sub(self, frac_start: float, frac_end: float) -> ProgressWindow:
		return ProgressWindow(
			self._bridge,
			compose(frac_start, self.start, self.end),
			compose(frac_end, self.start, self.end),
		)
