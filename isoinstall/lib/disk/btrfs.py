from __future__ import annotations

import re
from pathlib import Path

from ..exceptions import DiskError, SysCallError
from ..general import SysCommand
from ..output import info

BTRFS_MODES = ('single', 'raid0', 'raid1', 'raid10')

_UUID_LINE = re.compile(r'^UUID=([A-Fa-f0-9\-]+)$')


def btrfs_create(partitions: list[str], mode: str) -> None:
	if mode not in BTRFS_MODES:
		raise DiskError(f"unknown btrfs mode '{mode}'")

	info(f'Creating btrfs ({mode}) on {", ".join(partitions)}')

	try:
		SysCommand(['mkfs.btrfs', '-f', '-d', mode, '-m', mode, *partitions])
	except SysCallError as err:
		raise DiskError(f'unable to create btrfs filesystem: {err.message}') from err


def btrfs_filesystem_uuid(dev: str) -> str:
	try:
		output = SysCommand(['blkid', '-u', 'filesystem', '-t', 'TYPE=btrfs', '-o', 'export', dev]).decode()
	except SysCallError as err:
		raise DiskError(f'unable to detect FS UUID of {dev}') from err

	for line in output.splitlines():
		if match := _UUID_LINE.match(line.strip()):
			return match.group(1)

	raise DiskError(f'unable to detect FS UUID of {dev}')


def create_subvolume(path: Path) -> None:
	try:
		SysCommand(['btrfs', 'subvolume', 'create', str(path)])
	except SysCallError as err:
		raise DiskError(f'unable to create btrfs subvolume {path}') from err
