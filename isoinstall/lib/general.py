from __future__ import annotations

import os
import re
import shlex
import subprocess
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from select import EPOLLHUP, EPOLLIN, epoll
from shutil import which
from typing import Any, override

from .exceptions import RequirementError, SysCallError
from .output import debug, info, warn

_VT100_ESCAPE_REGEX = r'\x1B\[[?0-9;]*[a-zA-Z]'

# carriage return, newline and (runs of) backspace all terminate a progress line
_LINE_SPLIT_REGEX = re.compile(r'\r\n|\r|\n|\x08+')

# commands whose stdin must never end up in the log
_SECRET_STDIN_COMMANDS = ('chpasswd',)


class _CommandFinished:
	@override
	def __repr__(self) -> str:
		return 'CMD_FINISHED'


# returned by a line callback to stop reading and terminate the process early
CMD_FINISHED = _CommandFinished()

LineCallback = Callable[[str], Any]

# UI hook pumped while a command runs, see process_events_hook()
_process_events: ContextVar[Callable[[], None] | None] = ContextVar('process_events', default=None)


@contextmanager
def process_events_hook(hook: Callable[[], None]) -> Iterator[None]:
	"""
	Every command started inside the block calls ``hook`` between reads of
	its output, unless it was given its own ``process_events``.
	"""
	token = _process_events.set(hook)
	try:
		yield
	finally:
		_process_events.reset(token)


def locate_binary(name: str) -> str:
	if path := which(name):
		return path
	raise RequirementError(f"Binary {name} does not exist.")


def clear_vt100_escape_codes_from_str(data: str) -> str:
	return re.sub(_VT100_ESCAPE_REGEX, '', data)


def _prepare_cmd(cmd: str | list[str]) -> tuple[list[str], str]:
	if isinstance(cmd, str):
		cmd_str = cmd
		if '|' in cmd:
			# see 'man bash' for option pipefail
			return ['/bin/bash', '-c', f'set -o pipefail && {cmd}'], cmd_str

		cmd = shlex.split(cmd)
	else:
		cmd = [str(part) for part in cmd]
		cmd_str = shlex.join(cmd)

	if cmd and not cmd[0].startswith(('/', './')):
		cmd[0] = locate_binary(cmd[0])

	return cmd, cmd_str


class SysCommandWorker:
	"""
	Runs exactly one child process and streams its combined stdout/stderr.

	Output is split into lines on ``\\r``, ``\\n`` and backspace runs and each
	line is handed to ``line_callback``. A callback returning ``CMD_FINISHED``
	stops the read loop, after which the child is sent SIGTERM, given a grace
	period and finally SIGKILL'ed.
	"""

	def __init__(
		self,
		cmd: str | list[str],
		line_callback: LineCallback | None = None,
		stdin: str | bytes | None = None,
		environment_vars: dict[str, str] | None = None,
		working_directory: Path | str | None = None,
		process_events: Callable[[], None] | None = None,
		poll_interval: float = 0.2,
		kill_grace_period: float = 5.0,
	):
		self.cmd, self.cmd_str = _prepare_cmd(cmd)
		self.line_callback = line_callback
		self.stdin = stdin.encode('utf-8') if isinstance(stdin, str) else stdin
		# parsers expect untranslated output
		self.environment_vars = {'LC_ALL': 'C'}
		if environment_vars:
			self.environment_vars.update(environment_vars)

		self.working_directory = working_directory
		self.process_events = process_events or _process_events.get()
		self.poll_interval = poll_interval
		self.kill_grace_period = kill_grace_period

		self.exit_code: int | None = None
		self.finished_early = False
		self._trace_log = b''
		self._line_buffer = ''
		self.poll_object = epoll()
		self.process: subprocess.Popen[bytes] | None = None
		self.started: float | None = None
		self.ended: float | None = None

	def __iter__(self) -> Iterator[str]:
		yield from self.decode().splitlines()

	@override
	def __str__(self) -> str:
		return self.decode()

	def __enter__(self) -> SysCommandWorker:
		return self

	def __exit__(self, *args: Any) -> None:
		if self.process and self.process.stdout:
			self.process.stdout.close()

		self.poll_object.close()

		if len(args) >= 2 and args[1]:
			debug(args[1])
			return

		if self.exit_code != 0 and not self.finished_early:
			raise SysCallError(
				f"command '{self.cmd_str}' failed with exit code {self.exit_code}: {str(self)[-500:]}",
				self.exit_code,
				worker_log=self._trace_log,
			)

	def is_alive(self) -> bool:
		return bool(self.started and self.ended is None)

	def _log_cmd(self) -> None:
		if self.stdin and not any(name in self.cmd_str for name in _SECRET_STDIN_COMMANDS):
			text = self.stdin.decode('utf-8', errors='backslashreplace').rstrip('\n')
			info(f'# {self.cmd_str} <<EOD\n{text}\nEOD')
		else:
			info(f'# {self.cmd_str}')

	def execute(self) -> bool:
		if self.started:
			return True

		self._log_cmd()

		try:
			self.process = subprocess.Popen(
				self.cmd,
				stdin=subprocess.PIPE if self.stdin is not None else subprocess.DEVNULL,
				stdout=subprocess.PIPE,
				stderr=subprocess.STDOUT,
				env={**os.environ, **self.environment_vars},
				cwd=self.working_directory,
			)
		except OSError as err:
			raise SysCallError(f"command '{self.cmd_str}' failed to execute: {err}") from err

		self.started = time.time()

		if self.stdin is not None and self.process.stdin:
			try:
				self.process.stdin.write(self.stdin)
			except BrokenPipeError:
				debug(f'{self.cmd_str} closed its stdin early')
			finally:
				self.process.stdin.close()

		assert self.process.stdout is not None
		os.set_blocking(self.process.stdout.fileno(), False)
		self.poll_object.register(self.process.stdout.fileno(), EPOLLIN | EPOLLHUP)

		return True

	def _feed(self, data: bytes) -> None:
		self._line_buffer += data.decode('utf-8', errors='backslashreplace')

		while match := _LINE_SPLIT_REGEX.search(self._line_buffer):
			line = self._line_buffer[:match.start()]
			self._line_buffer = self._line_buffer[match.end():]

			if self._dispatch(line):
				return

	def _dispatch(self, line: str) -> bool:
		if not self.line_callback:
			return False

		if self.line_callback(clear_vt100_escape_codes_from_str(line)) is CMD_FINISHED:
			self.finished_early = True
			self.terminate()
			return True

		return False

	def poll(self) -> None:
		self.execute()

		if self.ended is not None:
			return

		assert self.process is not None and self.process.stdout is not None
		eof = False

		for _fileno, _event in self.poll_object.poll(self.poll_interval):
			try:
				output = os.read(self.process.stdout.fileno(), 8192)
			except BlockingIOError:
				continue
			except OSError:
				eof = True
				break

			if not output:
				eof = True
				break

			self._trace_log += output
			self._feed(output)

			if self.finished_early:
				return

		if self.process_events:
			self.process_events()

		if eof:
			if self._line_buffer:
				# trailing output without a line terminator
				remainder, self._line_buffer = self._line_buffer, ''
				self._dispatch(remainder)

			if not self.finished_early:
				self.exit_code = self.process.wait()
				self.ended = time.time()

	def terminate(self) -> None:
		"""
		SIGTERM, a grace period, then SIGKILL. If the process is still around
		after that it is left to be reaped later and only a warning is logged.
		"""
		self.ended = time.time()

		if not self.process or self.process.poll() is not None:
			self.exit_code = self.process.returncode if self.process else None
			return

		self.process.terminate()

		for signal_step in (self.process.kill, None):
			deadline = time.monotonic() + self.kill_grace_period

			while time.monotonic() < deadline:
				if self.process.poll() is not None:
					self.exit_code = self.process.returncode
					return
				time.sleep(0.1)

			if signal_step:
				debug(f'{self.cmd_str} did not stop after SIGTERM, sending SIGKILL')
				signal_step()

		warn(f'{self.cmd_str} (pid {self.process.pid}) did not terminate, leaving it behind')

	def decode(self, encoding: str = 'UTF-8') -> str:
		return self._trace_log.decode(encoding, errors='backslashreplace')


class SysCommand:
	def __init__(
		self,
		cmd: str | list[str],
		line_callback: LineCallback | None = None,
		stdin: str | bytes | None = None,
		environment_vars: dict[str, str] | None = None,
		working_directory: Path | str | None = None,
		process_events: Callable[[], None] | None = None,
	):
		self.cmd = cmd
		self.line_callback = line_callback
		self.stdin = stdin
		self.environment_vars = environment_vars
		self.working_directory = working_directory
		self.process_events = process_events

		self.session: SysCommandWorker | None = None
		self.create_session()

	def __iter__(self) -> Iterator[str]:
		if self.session:
			yield from self.session

	@override
	def __repr__(self) -> str:
		return self.decode('UTF-8', errors='backslashreplace') or ''

	def create_session(self) -> bool:
		"""
		Initiates a :ref:`SysCommandWorker` session in this class ``.session``
		and polls the process until it ends. A non-zero exit code raises
		:class:`SysCallError` when the session is left.
		"""
		if self.session:
			return True

		with SysCommandWorker(
			self.cmd,
			line_callback=self.line_callback,
			stdin=self.stdin,
			environment_vars=self.environment_vars,
			working_directory=self.working_directory,
			process_events=self.process_events,
		) as session:
			self.session = session

			while not self.session.ended:
				self.session.poll()

		return True

	def decode(self, encoding: str = 'utf-8', errors: str = 'backslashreplace', strip: bool = True) -> str:
		if not self.session:
			raise ValueError('No session available to decode')

		val = self.session._trace_log.decode(encoding, errors=errors)

		if strip:
			return val.strip()
		return val

	def output(self, remove_cr: bool = True) -> bytes:
		if not self.session:
			raise ValueError('No session available')

		if remove_cr:
			return self.session._trace_log.replace(b'\r\n', b'\n')

		return self.session._trace_log

	@property
	def exit_code(self) -> int | None:
		if self.session:
			return self.session.exit_code
		else:
			return None

	@property
	def trace_log(self) -> bytes | None:
		if self.session:
			return self.session._trace_log
		return None


def run_best_effort(cmd: str | list[str], **kwargs: Any) -> bool:
	"""
	Runs a command whose failure is acceptable, only logging it.
	"""
	try:
		SysCommand(cmd, **kwargs)
	except SysCallError as err:
		debug(f'Ignoring failed command: {err.message}')
		return False

	return True
