from __future__ import annotations

from abc import ABC, abstractmethod


class InstallerUI(ABC):
	"""
	Everything the installer needs from a front-end. A backend is picked
	once at start-up and handed to the installer.
	"""

	@abstractmethod
	def message(self, text: str) -> None: ...

	@abstractmethod
	def error(self, text: str) -> None: ...

	@abstractmethod
	def prompt(self, text: str) -> bool: ...

	@abstractmethod
	def progress(self, ratio: float, text: str) -> None: ...

	@abstractmethod
	def finished(self, success: bool, text: str) -> None: ...

	def display_html(self, page: str) -> None:
		"""
		Shows an informational page, backends without a browser ignore it.
		"""

	def process_events(self) -> None:
		"""
		Pumps pending UI work without blocking.
		"""
