import logging
import os
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol


class TableRow(Protocol):
	def table_data(self) -> dict[str, Any]: ...


class FormattedOutput:
	@staticmethod
	def as_table(rows: list[TableRow], columns: list[str] | None = None) -> str:
		"""
		Renders objects with a ``table_data()`` method as an aligned text
		table, one object per line. Numbers are right aligned.
		"""
		data = [row.table_data() for row in rows]
		if not data:
			return ''

		if columns is None:
			columns = list(data[0].keys())

		widths = {col: max(len(col), *(len(str(record.get(col, ''))) for record in data)) for col in columns}

		header = ' | '.join(col.ljust(widths[col]) for col in columns)
		lines = [header, '-' * len(header)]

		for record in data:
			cells = []
			for col in columns:
				value = record.get(col, '')
				if isinstance(value, int | float):
					cells.append(str(value).rjust(widths[col]))
				else:
					cells.append(str(value).ljust(widths[col]))
			lines.append(' | '.join(cells))

		return '\n'.join(lines) + '\n'


class Journald:
	_handler: logging.Handler | None = None

	@classmethod
	def log(cls, message: str, level: int = logging.DEBUG) -> None:
		try:
			import systemd.journal  # type: ignore[import-not-found]
		except ModuleNotFoundError:
			return None

		journal = logging.getLogger('isoinstall')

		if cls._handler is None:
			cls._handler = systemd.journal.JournalHandler(SYSLOG_IDENTIFIER='isoinstall')
			cls._handler.setFormatter(logging.Formatter('[%(levelname)s]: %(message)s'))
			journal.addHandler(cls._handler)
			journal.setLevel(logging.DEBUG)
			journal.propagate = False

		journal.log(level, message)


class Logger:
	"""
	The installation log, one ``<date> <time>.<ms> <LEVEL>: <message>`` line
	per record. It lives next to the other installer state in /tmp unless
	moved with ``set_directory()``.
	"""

	def __init__(self, path: Path = Path('/tmp')) -> None:
		self._path = path
		self.verbose = False

	@property
	def path(self) -> Path:
		return self._path / 'install.log'

	@property
	def directory(self) -> Path:
		return self._path

	def set_directory(self, path: Path) -> None:
		self._path = path

	def _ensure_writable(self) -> None:
		try:
			self._path.mkdir(exist_ok=True, parents=True)
			self.path.touch(exist_ok=True)
		except PermissionError:
			fallback = Path.cwd()
			sys.stderr.write(f'Unable to write {self.path}, logging to {fallback / "install.log"} instead\n')
			self._path = fallback

	def log(self, level: int, content: str) -> None:
		self._ensure_writable()

		with self.path.open('a') as f:
			f.write(f'{_timestamp()} {logging.getLevelName(level)}: {content.rstrip()}\n')


logger = Logger()


class Color(Enum):
	red = '31'
	yellow = '33'
	white = '37'
	gray = '38;5;246'


def _supports_color() -> bool:
	return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty() and 'NO_COLOR' not in os.environ


def _stylize_output(text: str, fg: Color, bold: bool) -> str:
	codes = [fg.value]
	if bold:
		codes.append('1')

	return f'\033[{";".join(codes)}m{text}\033[0m'


def _timestamp() -> str:
	return datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]


def info(*msgs: str, fg: Color = Color.white, bold: bool = False) -> None:
	log(*msgs, level=logging.INFO, fg=fg, bold=bold)


def debug(*msgs: str, fg: Color = Color.gray, bold: bool = False) -> None:
	log(*msgs, level=logging.DEBUG, fg=fg, bold=bold)


def warn(*msgs: str, fg: Color = Color.yellow, bold: bool = False) -> None:
	log(*msgs, level=logging.WARNING, fg=fg, bold=bold)


def error(*msgs: str, fg: Color = Color.red, bold: bool = True) -> None:
	log(*msgs, level=logging.ERROR, fg=fg, bold=bold)


def log(*msgs: str, level: int = logging.INFO, fg: Color = Color.white, bold: bool = False) -> None:
	text = ' '.join(str(x) for x in msgs)

	logger.log(level, text)
	Journald.log(text, level=level)

	# stdout belongs to the front-end protocol, human readable output goes to stderr
	if level != logging.DEBUG or logger.verbose:
		if _supports_color():
			text = _stylize_output(text, fg, bold)

		sys.stderr.write(f'{text}\n')
		sys.stderr.flush()
