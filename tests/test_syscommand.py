from pathlib import Path

import pytest

from isoinstall.lib.exceptions import RequirementError, SysCallError
from isoinstall.lib.general import CMD_FINISHED, SysCommand, process_events_hook, run_best_effort


def test_decode_output() -> None:
	assert SysCommand(['echo', 'hello world']).decode() == 'hello world'
	assert SysCommand('echo hello').exit_code == 0


def test_missing_binary() -> None:
	with pytest.raises(RequirementError):
		SysCommand('nonexistingbinary-for-testing')


def test_failing_command() -> None:
	with pytest.raises(SysCallError) as exc_info:
		SysCommand(['sh', '-c', 'echo broken; exit 3'])

	assert exc_info.value.exit_code == 3
	assert b'broken' in exc_info.value.worker_log


def test_pipes_run_through_bash() -> None:
	assert SysCommand('echo one two | tr " " "\\n" | wc -l').decode() == '2'


def test_line_callback_sees_every_line() -> None:
	lines: list[str] = []

	SysCommand(['sh', '-c', 'echo first; printf "second\\rthird\\n"; echo fourth'], line_callback=lines.append)

	assert lines == ['first', 'second', 'third', 'fourth']


def test_line_callback_can_finish_early() -> None:
	lines: list[str] = []

	def _on_line(line: str) -> object:
		lines.append(line)
		return CMD_FINISHED if line == 'ready' else None

	cmd = SysCommand(['sh', '-c', 'echo ready; sleep 30; echo never'], line_callback=_on_line)

	assert lines == ['ready']
	assert cmd.session is not None
	assert cmd.session.finished_early


def test_stdin_and_environment() -> None:
	assert SysCommand(['cat'], stdin='from stdin\n').decode() == 'from stdin'
	assert SysCommand(['sh', '-c', 'echo $GREETING'], environment_vars={'GREETING': 'hi'}).decode() == 'hi'


def test_working_directory(tmp_path: Path) -> None:
	assert SysCommand(['pwd'], working_directory=tmp_path).decode() == str(tmp_path.resolve())


def test_run_best_effort() -> None:
	assert run_best_effort(['true'])
	assert not run_best_effort(['false'])


def test_process_events_while_waiting() -> None:
	calls: list[int] = []

	SysCommand(['sh', '-c', 'sleep 0.5'], process_events=lambda: calls.append(0))

	assert len(calls) >= 2


def test_process_events_hook() -> None:
	calls: list[str] = []

	with process_events_hook(lambda: calls.append('hook')):
		SysCommand(['sh', '-c', 'sleep 0.5'])
		SysCommand(['sh', '-c', 'sleep 0.3'], process_events=lambda: calls.append('own'))

	assert calls.count('hook') >= 2
	assert calls.count('own') >= 1

	# nothing is pumped once the block is left
	before = len(calls)
	SysCommand(['sh', '-c', 'sleep 0.3'])

	assert len(calls) == before
