from __future__ import annotations

import re
import uuid
from enum import Enum

from ..exceptions import UnknownFilesystemFormat


class StorageBackend(Enum):
	Lvm = 'lvm'
	Zfs = 'zfs'
	Btrfs = 'btrfs'


class RaidLevel(Enum):
	Raid0 = 'raid0'
	Raid1 = 'raid1'
	Raid10 = 'raid10'
	RaidZ1 = 'raidz1'
	RaidZ2 = 'raidz2'
	RaidZ3 = 'raidz3'


_LEGACY_LABEL = re.compile(r'^(zfs|btrfs)\s*\((raid\d+|raidz-?\d)\)$', re.IGNORECASE)


class FilesystemType(Enum):
	Ext4 = 'ext4'
	Xfs = 'xfs'
	ZfsRaid0 = 'zfs-raid0'
	ZfsRaid1 = 'zfs-raid1'
	ZfsRaid10 = 'zfs-raid10'
	ZfsRaidZ1 = 'zfs-raidz1'
	ZfsRaidZ2 = 'zfs-raidz2'
	ZfsRaidZ3 = 'zfs-raidz3'
	BtrfsRaid0 = 'btrfs-raid0'
	BtrfsRaid1 = 'btrfs-raid1'
	BtrfsRaid10 = 'btrfs-raid10'

	@classmethod
	def parse(cls, value: str | FilesystemType) -> FilesystemType:
		"""
		Accepts the canonical value as well as the labels used by the
		graphical installer, e.g. ``zfs (RAID10)`` or ``btrfs (RAID1)``.
		"""
		if isinstance(value, FilesystemType):
			return value

		text = value.strip()

		if match := _LEGACY_LABEL.match(text):
			backend, level = match.groups()
			text = f'{backend}-{level.replace("-", "")}'

		try:
			return cls(text.lower())
		except ValueError:
			raise UnknownFilesystemFormat(f"unknown filesystem '{value}'") from None

	@property
	def backend(self) -> StorageBackend:
		match self:
			case FilesystemType.Ext4 | FilesystemType.Xfs:
				return StorageBackend.Lvm
			case FilesystemType.BtrfsRaid0 | FilesystemType.BtrfsRaid1 | FilesystemType.BtrfsRaid10:
				return StorageBackend.Btrfs
			case _:
				return StorageBackend.Zfs

	@property
	def raid_level(self) -> RaidLevel | None:
		if self.backend == StorageBackend.Lvm:
			return None

		return RaidLevel(self.value.split('-', 1)[1])

	@property
	def min_disks(self) -> int:
		match self.raid_level:
			case RaidLevel.Raid1:
				return 2
			case RaidLevel.Raid10:
				return 4
			case RaidLevel.RaidZ1 | RaidLevel.RaidZ2 | RaidLevel.RaidZ3:
				return 2 + self.raidz_parity
			case _:
				return 1

	@property
	def raidz_parity(self) -> int:
		match self.raid_level:
			case RaidLevel.RaidZ1:
				return 1
			case RaidLevel.RaidZ2:
				return 2
			case RaidLevel.RaidZ3:
				return 3
			case _:
				return 0

	@property
	def is_zfs(self) -> bool:
		return self.backend == StorageBackend.Zfs

	@property
	def is_btrfs(self) -> bool:
		return self.backend == StorageBackend.Btrfs

	@property
	def label(self) -> str:
		if self.backend == StorageBackend.Lvm:
			return self.value

		level = self.raid_level.value.upper().replace('RAIDZ', 'RAIDZ-') if self.raid_level else ''
		return f'{self.backend.value} ({level})'


class PartitionType(Enum):
	"""
	sgdisk style type codes and their GPT type GUIDs
	"""
	BiosBoot = 'EF02'
	EfiSystem = 'EF00'
	LinuxLvm = '8E00'
	LinuxFilesystem = '8300'
	ZfsMember = 'BF01'

	@classmethod
	def from_code(cls, code: str) -> PartitionType:
		try:
			return cls(code.upper())
		except ValueError:
			raise UnknownFilesystemFormat(f"unknown partition type '{code}'") from None

	@property
	def guid(self) -> str:
		match self:
			case PartitionType.BiosBoot:
				return '21686148-6449-6E6F-744E-656564454649'
			case PartitionType.EfiSystem:
				return 'C12A7328-F81F-11D2-BA4B-00A0C93EC93B'
			case PartitionType.LinuxLvm:
				return 'E6D6D379-F507-44C2-A23C-238F2A3DF928'
			case PartitionType.LinuxFilesystem:
				return '0FC63DAF-8483-4772-8E79-3D69D8477DE4'
			case PartitionType.ZfsMember:
				return '6A898CC3-1DD2-11B2-99A6-080020736631'

	@property
	def bytes(self) -> bytes:
		return uuid.UUID(self.guid).bytes
