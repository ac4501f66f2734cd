from __future__ import annotations

import time
from pathlib import Path

from ..exceptions import DiskError, SysCallError
from ..general import SysCommand, run_best_effort
from ..models.device import LsblkInfo, LsblkOutput
from ..output import debug, info, warn


def _fetch_lsblk_info(dev_path: Path | str) -> LsblkOutput:
	cmd = ['lsblk', '--json', '--paths', '--output', ','.join(LsblkInfo.fields()), str(dev_path)]

	try:
		worker = SysCommand(cmd)
	except SysCallError as err:
		if err.worker_log:
			debug(f'Error calling lsblk: {err.worker_log.decode()}')

		raise DiskError(f'Failed to read disk "{dev_path}" with lsblk') from err

	return LsblkOutput.model_validate_json(worker.output(remove_cr=False))


def list_device_tree(dev_path: Path | str) -> list[str]:
	"""
	Returns the device and everything stacked on it (partitions, ...),
	deepest entries first.
	"""
	entries: list[str] = []
	for device in _fetch_lsblk_info(dev_path).blockdevices:
		entries += [str(entry.path) for entry in device.flatten()]

	return sorted(set(entries), key=len, reverse=True)


def udevadm_trigger_block(nowait: bool = False) -> None:
	if not nowait:
		# give the kernel time to re-read the partition table
		time.sleep(1)

	# makes udev (re-)create /dev/disk/by-uuid and friends
	run_best_effort(['udevadm', 'trigger', '--subsystem-match', 'block'])
	run_best_effort(['udevadm', 'settle', '--timeout', '10'])


def wipe_disk(disk: str) -> None:
	"""
	Removes LVM, ZFS and filesystem signatures from a disk and all its
	partitions. This is not a secure erase, it only makes sure that
	auto-discovery does not pick up any old metadata.
	"""
	info(f'Wiping partitions and metadata: {disk}')

	try:
		partitions = list_device_tree(disk)
	except DiskError as err:
		warn(str(err))
		partitions = [disk]

	for part in partitions:
		if part == disk or not part.startswith(disk):
			continue

		run_best_effort(['pvremove', '-ff', '-y', part])
		run_best_effort(['zpool', 'labelclear', '-f', part])
		run_best_effort(['dd', 'if=/dev/zero', f'of={part}', 'bs=1M', 'count=16'])

	try:
		SysCommand(['wipefs', '-a', *partitions])
	except SysCallError as err:
		warn(f'Failed to wipe signatures on {disk}: {err.message}')


def zero_device_head(dev: str, size_mib: int = 256) -> None:
	if not Path(dev).is_block_device():
		return

	run_best_effort(['dd', 'if=/dev/zero', f'of={dev}', 'bs=1M', f'count={size_mib}'])


def mount(
	dev_path: str | Path,
	target_mountpoint: Path,
	mount_fs: str | None = None,
	options: list[str] = [],
	bind: bool = False,
) -> None:
	target_mountpoint.mkdir(parents=True, exist_ok=True)

	cmd = ['mount', '-n']

	if bind:
		cmd.append('--bind')
	if len(options):
		cmd.extend(('-o', ','.join(options)))
	if mount_fs:
		cmd.extend(('-t', mount_fs))

	cmd.extend((str(dev_path), str(target_mountpoint)))

	debug(f'Mounting {dev_path}: {" ".join(cmd)}')

	try:
		SysCommand(cmd)
	except SysCallError as err:
		raise DiskError(f'unable to mount {dev_path} on {target_mountpoint}\n{err.message}') from err


def umount(mountpoint: Path, detach_loop: bool = False) -> bool:
	cmd = ['umount']

	if detach_loop:
		cmd.append('-d')

	return run_best_effort(cmd + [str(mountpoint)])
