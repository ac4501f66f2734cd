from __future__ import annotations

import re
from pathlib import Path

from ..exceptions import DiskError, SysCallError
from ..general import SysCommand
from ..models.device import SECTOR_SIZE, BlockDevice
from ..output import debug

_SYS_BLOCK = Path('/sys/block')
_BY_ID = Path('/dev/disk/by-id')
_BY_UUID = Path('/dev/disk/by-uuid')

_IGNORED_DEVICES = re.compile(r'^(ram\d+|loop\d+|md\d+|dm-.*|fd\d+|sr\d+)$')

# device naming schemes where the partition number is appended directly ...
_PLAIN_SUFFIX = (
	re.compile(r'^/dev/sd([a-h]?[a-z]|i[a-v])$'),
	re.compile(r'^/dev/xvd[a-z]$'),  # Citrix Hypervisor
	re.compile(r'^/dev/[hxev]d[a-z]$'),
	re.compile(r'^/dev/[^/]+/hd[a-z]$'),
)
# ... and those which need a 'p' separator
_P_SUFFIX = (
	re.compile(r'^/dev/[^/]+/c\d+d\d+$'),
	re.compile(r'^/dev/[^/]+/d\d+$'),
	re.compile(r'^/dev/nvme\d+n\d+$'),
)

_MAX_MODEL_LENGTH = 30


def get_partition_dev(dev: str, partnum: int) -> str:
	if any(regex.match(dev) for regex in _PLAIN_SUFFIX):
		return f'{dev}{partnum}'

	if any(regex.match(dev) for regex in _P_SUFFIX):
		return f'{dev}p{partnum}'

	raise DiskError(f'unable to get device for partition {partnum} on device {dev}')


def _find_stable_path(stable_dir: Path, dev: str) -> Path | None:
	if not stable_dir.is_dir():
		return None

	for path in sorted(stable_dir.iterdir()):
		try:
			if path.samefile(dev):
				return path
		except OSError:
			continue

	return None


def get_disk_by_id_path(dev: str) -> str | None:
	path = _find_stable_path(_BY_ID, dev)
	return str(path) if path else None


def get_dev_uuid(dev: str) -> str | None:
	path = _find_stable_path(_BY_UUID, dev)
	return path.name if path else None


def _read_attribute(path: Path) -> str | None:
	try:
		lines = path.read_text().splitlines()
	except OSError:
		return None

	return lines[0].strip() if lines else None


def _udev_properties(sys_path: Path) -> dict[str, str] | None:
	try:
		output = SysCommand(['udevadm', 'info', '--path', str(sys_path), '--query', 'all']).decode()
	except SysCallError as err:
		debug(f'udevadm info failed for {sys_path}: {err.message}')
		return None

	props: dict[str, str] = {}
	for line in output.splitlines():
		prefix, _, value = line.partition(': ')
		if prefix == 'N':
			props['NAME'] = value.strip()
		elif prefix == 'E':
			key, _, val = value.partition('=')
			props[key] = val.strip()

	return props


class DiskInventory:
	"""
	Snapshot of the candidate installation disks.

	The list is built on first access and kept for the lifetime of the
	object, a rebuild has to be requested explicitly with ``force=True``.
	When test images are given, each image file stands in for a disk.
	"""

	def __init__(self, test_images: list[Path] | None = None, sys_block: Path = _SYS_BLOCK) -> None:
		self._test_images = test_images or []
		self._sys_block = sys_block
		self._disks: list[BlockDevice] | None = None

	@property
	def is_test_mode(self) -> bool:
		return len(self._test_images) > 0

	def list_disks(self, force: bool = False) -> list[BlockDevice]:
		if self._disks is None or force:
			if self.is_test_mode:
				self._disks = self._scan_test_images()
			else:
				self._disks = self._scan_sysfs()

		return self._disks

	def find_by_devname(self, path: str) -> BlockDevice:
		for disk in self.list_disks():
			if disk.path == path:
				return disk

		raise DiskError(f"no such disk device '{path}'")

	def find_by_ordinal(self, ordinal: int) -> BlockDevice:
		for disk in self.list_disks():
			if disk.ordinal == ordinal:
				return disk

		raise DiskError(f'no disk with index {ordinal}')

	def hd_size_kib(self, path: str) -> int:
		return self.find_by_devname(path).size_kib

	def _scan_test_images(self) -> list[BlockDevice]:
		return [
			BlockDevice(
				ordinal=index,
				path=str(image),
				size_sectors=image.stat().st_size // SECTOR_SIZE,
				model='TESTDISK',
				logical_block_size=SECTOR_SIZE,
				sys_path=f'/sys/block/{image}',
			)
			for index, image in enumerate(self._test_images)
		]

	def _scan_sysfs(self) -> list[BlockDevice]:
		disks: list[BlockDevice] = []

		if not self._sys_block.is_dir():
			return disks

		for bd in sorted(self._sys_block.iterdir()):
			if _IGNORED_DEVICES.match(bd.name):
				continue

			props = _udev_properties(bd)
			if not props:
				continue

			if props.get('DEVTYPE') != 'disk':
				continue
			if any(key.startswith('ID_CDROM') for key in props):
				continue
			if props.get('ID_FS_TYPE') == 'iso9660':
				continue

			name = props.get('NAME')
			if not name:
				continue

			dev_path = props.get('DEVNAME') or f'/dev/{name}'

			size = _read_attribute(bd / 'size')
			if not size or not size.isdigit() or int(size) <= 0:
				debug(f'Skipping {bd.name}, no valid size')
				continue

			model = (_read_attribute(bd / 'device' / 'model') or '')[:_MAX_MODEL_LENGTH]

			logical_bsize = _read_attribute(bd / 'queue' / 'logical_block_size')
			if logical_bsize and logical_bsize.isdigit():
				block_size = int(logical_bsize)
			else:
				block_size = SECTOR_SIZE

			disks.append(
				BlockDevice(
					ordinal=len(disks),
					path=dev_path,
					size_sectors=int(size),
					model=model,
					logical_block_size=block_size,
					sys_path=f'/sys/block/{name}',
				)
			)

		return disks
