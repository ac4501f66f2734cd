from __future__ import annotations

import sys
from typing import TextIO, override

from ..output import debug, error, info
from .base import InstallerUI


class StdioUI(InstallerUI):
	"""
	Line based protocol on stdin/stdout, used by the automated installer.

	Every event is one line prefixed with its kind, e.g. ``progress: 0.25 text``.
	A prompt is answered by a single line, ``ok`` means yes.
	"""

	def __init__(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
		self._stdin = stdin or sys.stdin
		self._stdout = stdout or sys.stdout

	def _write(self, line: str) -> None:
		self._stdout.write(f'{line}\n')
		self._stdout.flush()

	@override
	def message(self, text: str) -> None:
		self._write(f'message: {text}')

	@override
	def error(self, text: str) -> None:
		error(f'error: {text}')
		self._write(f'error: {text}')

	@override
	def prompt(self, text: str) -> bool:
		query = text.replace('\n', ' ')
		self._write(f'prompt: {query}')

		response = self._stdin.readline()

		return response.strip().lower() == 'ok'

	@override
	def progress(self, ratio: float, text: str) -> None:
		self._write(f'progress: {ratio} {text}')

	@override
	def finished(self, success: bool, text: str) -> None:
		state = 'ok' if success else 'err'
		info(f'finished: {state}, {text}')
		self._write(f'finished: {state}, {text}')

	@override
	def display_html(self, page: str) -> None:
		debug(f'display_html() not available for stdio backend, skipping {page}')
