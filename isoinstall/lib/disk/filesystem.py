from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field

from ..exceptions import DiskError, SysCallError, UnknownFilesystemFormat
from ..general import SysCommand
from ..models.filesystem import FilesystemType
from ..output import debug
from ..progress import ProgressWindow


class Mke2fsProgress:
	"""
	Turns the output of ``mkfs.ext4`` into a completion fraction:
	the inode table counter covers the first 90%, journal and superblocks
	the rest.
	"""

	_INODE_TABLES = re.compile(r'Writing inode tables:\s+(\d+)/(\d+)')
	_JOURNAL = re.compile(r'Creating journal.*done')
	_SUPERBLOCKS = re.compile(r'Writing superblocks and filesystem.*done')

	def __init__(self) -> None:
		self._max = 0

	def __call__(self, line: str) -> float | None:
		if match := self._INODE_TABLES.search(line):
			self._max = int(match.group(2))
			return None

		if self._max and (match := re.search(rf'(\d+)/{self._max}', line)):
			return int(match.group(1)) / self._max * 0.9

		if self._JOURNAL.search(line):
			return 0.95

		if self._SUPERBLOCKS.search(line):
			return 1.0

		return None


@dataclass(frozen=True)
class MkfsSetup:
	command: list[str]
	root_options: list[str] = field(default_factory=list)
	data_options: list[str] = field(default_factory=list)
	root_mount_options: str = 'defaults'
	progress_parser: Callable[[], Callable[[str], float | None]] | None = None


FS_SETUP: dict[FilesystemType, MkfsSetup] = {
	FilesystemType.Ext4: MkfsSetup(
		command=['mkfs.ext4', '-F'],
		data_options=['-m', '0'],
		root_mount_options='errors=remount-ro',
		progress_parser=Mke2fsProgress,
	),
	FilesystemType.Xfs: MkfsSetup(
		command=['mkfs.xfs', '-f'],
	),
}


def fs_setup(fs_type: FilesystemType) -> MkfsSetup:
	if setup := FS_SETUP.get(fs_type):
		return setup

	raise UnknownFilesystemFormat(f"internal error - unknown file system '{fs_type.value}'")


def create_filesystem(
	dev: str,
	name: str,
	fs_type: FilesystemType,
	progress: ProgressWindow | None = None,
) -> None:
	setup = fs_setup(fs_type)
	options = setup.root_options if name == 'root' else setup.data_options
	cmd = [*setup.command, *options, dev]

	parser = setup.progress_parser() if setup.progress_parser else None

	def _on_line(line: str) -> None:
		if parser and progress and (frac := parser(line)) is not None:
			progress.update(frac)

	if progress:
		progress.update(0, f'creating {name} filesystem')

	debug('Formatting filesystem:', ' '.join(cmd))

	try:
		SysCommand(cmd, line_callback=_on_line)
	except SysCallError as err:
		raise DiskError(f'unable to create {name} filesystem on {dev}: {err.message}') from err


def create_esp(dev: str, is_4kn: bool) -> None:
	# FIXME remove '-s1' once https://github.com/dosfstools/dosfstools/issues/111 is fixed
	cmd = ['mkfs.vfat', *(['-s1'] if is_4kn else []), '-F32', dev]

	try:
		SysCommand(cmd)
	except SysCallError as err:
		raise DiskError(f'unable to initialize EFI ESP on device {dev}') from err


def create_swap(dev: str) -> None:
	try:
		SysCommand(['mkswap', '-f', dev])
	except SysCallError as err:
		raise DiskError('unable to create swap space') from err
