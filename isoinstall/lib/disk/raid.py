from __future__ import annotations

from dataclasses import dataclass, field

from ..exceptions import DiskError, HardwareIncompatibilityError, UnknownFilesystemFormat
from ..models.device import BlockDevice
from ..models.filesystem import FilesystemType, RaidLevel, StorageBackend
from .inventory import DiskInventory


@dataclass(frozen=True)
class VdevGroup:
	kind: str | None
	devices: list[str]

	def args(self, replacements: dict[str, str]) -> list[str]:
		devices = [replacements.get(dev, dev) for dev in self.devices]
		return [self.kind, *devices] if self.kind else devices


@dataclass(frozen=True)
class ZfsLayout:
	disks: list[BlockDevice]
	groups: list[VdevGroup]

	def vdev_args(self, replacements: dict[str, str] = {}) -> list[str]:
		"""
		Arguments for ``zpool create``, with device paths optionally swapped
		for their stable counterparts.
		"""
		args: list[str] = []
		for group in self.groups:
			args += group.args(replacements)
		return args

	def topology(self, replacements: dict[str, str] = {}) -> str:
		return ' '.join(self.vdev_args(replacements))


@dataclass(frozen=True)
class BtrfsLayout:
	disks: list[BlockDevice]
	mode: str


@dataclass(frozen=True)
class StorageSelection:
	filesystem: FilesystemType
	disks: list[BlockDevice] = field(default_factory=list)
	zfs: ZfsLayout | None = None
	btrfs: BtrfsLayout | None = None

	@property
	def backend(self) -> StorageBackend:
		return self.filesystem.backend


def mirror_size_check(expected: int, actual: int) -> None:
	if abs(expected - actual) > expected / 10:
		raise DiskError('mirrored disks must have same size')


def legacy_bios_4k_check(disk: BlockDevice, boot_type: str) -> None:
	if boot_type != 'efi' and disk.is_4kn:
		raise HardwareIncompatibilityError('Booting from 4Kn drive in legacy BIOS mode is not supported.')


class StorageSelector:
	"""
	Turns the filesystem choice and disk selection into a concrete storage
	layout. Everything here only validates and computes, so a rejected
	selection never touches a disk.
	"""

	def __init__(self, inventory: DiskInventory, boot_type: str) -> None:
		self._inventory = inventory
		self._boot_type = boot_type

	def select(
		self,
		filesystem: FilesystemType,
		disk_selection: dict[int, int],
		target_hd: str | None = None,
	) -> StorageSelection:
		match filesystem.backend:
			case StorageBackend.Zfs:
				layout = self.zfs_setup(filesystem, disk_selection)
				return StorageSelection(filesystem, layout.disks, zfs=layout)
			case StorageBackend.Btrfs:
				btrfs = self.btrfs_setup(filesystem, disk_selection)
				return StorageSelection(filesystem, btrfs.disks, btrfs=btrfs)
			case StorageBackend.Lvm:
				if not target_hd:
					raise DiskError('no target disk selected')
				return StorageSelection(filesystem, [self._inventory.find_by_devname(target_hd)])

	def raid_devlist(self, disk_selection: dict[int, int]) -> list[BlockDevice]:
		"""
		The selected disks in selection order. A disk used in more than one
		slot is rejected.
		"""
		seen: set[str] = set()
		devlist: list[BlockDevice] = []

		for slot in sorted(disk_selection):
			disk = self._inventory.find_by_ordinal(disk_selection[slot])

			if disk.path in seen:
				raise DiskError(f"device '{disk.path}' is used more than once")

			seen.add(disk.path)
			devlist.append(disk)

		return devlist

	def zfs_setup(self, filesystem: FilesystemType, disk_selection: dict[int, int]) -> ZfsLayout:
		if not filesystem.is_zfs:
			raise UnknownFilesystemFormat(f"unknown zfs mode '{filesystem.label}'")

		devlist = self.raid_devlist(disk_selection)
		diskcount = len(devlist)

		if diskcount < 1:
			raise DiskError(f'{filesystem.label} needs at least one device')

		if diskcount < filesystem.min_disks:
			raise DiskError(f'{filesystem.label} needs at least {filesystem.min_disks} devices')

		level = filesystem.raid_level
		groups: list[VdevGroup]

		match level:
			case RaidLevel.Raid0:
				for disk in devlist:
					legacy_bios_4k_check(disk, self._boot_type)
				groups = [VdevGroup(None, [disk.path for disk in devlist])]

			case RaidLevel.Raid10:
				if diskcount & 1:
					raise DiskError(f'{filesystem.label} needs an even number of devices')

				groups = []
				for first, second in zip(devlist[::2], devlist[1::2]):
					# pairs need approximately the same size
					mirror_size_check(first.size_sectors, second.size_sectors)
					legacy_bios_4k_check(first, self._boot_type)
					legacy_bios_4k_check(second, self._boot_type)
					groups.append(VdevGroup('mirror', [first.path, second.path]))

			case RaidLevel.Raid1 | RaidLevel.RaidZ1 | RaidLevel.RaidZ2 | RaidLevel.RaidZ3:
				# all disks need approximately the same size
				expected_size = devlist[0].size_sectors
				for disk in devlist:
					mirror_size_check(expected_size, disk.size_sectors)
					legacy_bios_4k_check(disk, self._boot_type)

				kind = 'mirror' if level == RaidLevel.Raid1 else f'raidz{filesystem.raidz_parity}'
				groups = [VdevGroup(kind, [disk.path for disk in devlist])]

			case _:
				raise UnknownFilesystemFormat(f"unknown zfs mode '{filesystem.label}'")

		return ZfsLayout(devlist, groups)

	def btrfs_setup(self, filesystem: FilesystemType, disk_selection: dict[int, int]) -> BtrfsLayout:
		if not filesystem.is_btrfs:
			raise UnknownFilesystemFormat(f"unknown btrfs mode '{filesystem.label}'")

		devlist = self.raid_devlist(disk_selection)
		diskcount = len(devlist)

		if diskcount < 1:
			raise DiskError(f'{filesystem.label} needs at least one device')

		for disk in devlist:
			legacy_bios_4k_check(disk, self._boot_type)

		if diskcount == 1:
			return BtrfsLayout(devlist, 'single')

		if diskcount < filesystem.min_disks:
			raise DiskError(f'{filesystem.label} needs at least {filesystem.min_disks} devices')

		assert filesystem.raid_level is not None
		return BtrfsLayout(devlist, filesystem.raid_level.value)
