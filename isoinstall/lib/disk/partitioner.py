from __future__ import annotations

from parted import PARTITION_NORMAL, Constraint, Device, Disk, DiskException, Geometry, IOException, Partition, PartitionException, freshDisk, getDevice

from ..exceptions import DiskError, UnknownFilesystemFormat, UserAbort
from ..models.device import MiB, BlockDevice, PartitionResult
from ..models.filesystem import PartitionType
from ..output import debug, info
from ..sizing import DEFAULT_POLICY, KIB_PER_GIB, SizingPolicy, esp_size_mib
from ..ui.base import InstallerUI
from .inventory import DiskInventory, get_partition_dev
from .utils import udevadm_trigger_block, zero_device_head

# partition types which may hold the operating system
OS_PARTITION_TYPES = (PartitionType.LinuxLvm, PartitionType.LinuxFilesystem, PartitionType.ZfsMember)

BIOS_BOOT_PARTNUM = 1
ESP_PARTNUM = 2
OS_PARTNUM = 3


class Partitioner:
	"""
	Writes the bootable GPT layout used for every installation disk:

	1. BIOS boot partition in the gap before the first MiB (not on 4Kn disks)
	2. EFI system partition starting at 1 MiB
	3. the OS partition, up to the end of the disk or the configured size limit
	"""

	def __init__(
		self,
		inventory: DiskInventory,
		ui: InstallerUI,
		policy: SizingPolicy = DEFAULT_POLICY,
		test_mode: bool = False,
	) -> None:
		self._inventory = inventory
		self._ui = ui
		self._policy = policy
		self._test_mode = test_mode

	def partition_bootable(
		self,
		target_dev: str,
		max_size_gb: float | None,
		partition_type: PartitionType | str,
	) -> PartitionResult:
		if self._test_mode:
			raise DiskError('partitioning is too dangerous in test mode')

		if isinstance(partition_type, str):
			partition_type = PartitionType.from_code(partition_type)

		if partition_type not in OS_PARTITION_TYPES:
			raise UnknownFilesystemFormat(f"unknown partition type '{partition_type.value}'")

		block_device = self._inventory.find_by_devname(target_dev)
		hdsize = block_device.size_kib

		# for bigger disks default to a generous ESP, leaves room for multiple kernels
		esp_size = esp_size_mib(hdsize, self._policy)
		esp_end = esp_size + 1

		end_mib: int | None = None
		if max_size_gb:
			maxhdsize = int(max_size_gb * KIB_PER_GIB)
			if maxhdsize < hdsize:
				hdsize = maxhdsize
				end_mib = hdsize // 1024

		self._check_size(target_dev, hdsize)

		info(f'Creating partitions: {target_dev}')
		self._write_layout(block_device, esp_size, esp_end, end_mib, partition_type)

		udevadm_trigger_block()

		efibootdev = get_partition_dev(target_dev, ESP_PARTNUM)
		osdev = get_partition_dev(target_dev, OS_PARTNUM)

		# stale signatures would confuse later format and detection steps
		for part in (efibootdev, osdev):
			zero_device_head(part)

		os_size = hdsize - esp_end * 1024

		return PartitionResult(
			os_size_kib=os_size,
			os_partition_path=osdev,
			esp_partition_path=efibootdev,
		)

	def _check_size(self, target_dev: str, hdsize_kib: int) -> None:
		hdgb = hdsize_kib // KIB_PER_GIB
		hard_limit = self._policy.disk_hard_min_gib
		soft_limit = self._policy.disk_soft_min_gib

		if hdgb < hard_limit:
			raise DiskError(f"root disk '{target_dev}' too small ({hdgb} GB < {hard_limit} GB)")

		if hdgb < soft_limit:
			response_ok = self._ui.prompt(
				f'Root disk space {hdgb} GB is below recommended minimum space of {soft_limit} GB,'
				' installation might not be successful! Continue?'
			)
			if not response_ok:
				raise UserAbort(
					f"root disk '{target_dev}' too small ({hdgb} GB < {soft_limit} GB), and warning not accepted."
				)

	@staticmethod
	def _add_partition(disk: Disk, device: Device, start: int, end: int, partition_type: PartitionType) -> Partition:
		geometry = Geometry(device=device, start=start, end=end)
		partition = Partition(disk=disk, type=PARTITION_NORMAL, geometry=geometry)

		debug(f'\tType: {partition_type.value}')
		debug(f'\tGeometry: {start} start sector, {end} end sector')

		try:
			disk.addPartition(partition=partition, constraint=Constraint(exactGeom=geometry))
		except PartitionException as ex:
			raise DiskError(f'Unable to add partition, most likely due to overlapping sectors: {ex}') from ex

		partition.type_uuid = partition_type.bytes
		return partition

	def _write_layout(
		self,
		block_device: BlockDevice,
		esp_size: int,
		esp_end: int,
		end_mib: int | None,
		partition_type: PartitionType,
	) -> None:
		target_dev = block_device.path

		try:
			device = getDevice(target_dev)
			disk = freshDisk(device, 'gpt')

			sectors_per_mib = MiB // device.sectorSize
			free_regions = disk.getFreeSpaceRegions()
			first_usable = min(region.start for region in free_regions)
			last_usable = max(region.end for region in free_regions)

			# partition numbers are handed out lowest free first, so slot 1 is
			# always taken before the ESP and the OS partition get added
			boot_slot = self._add_partition(
				disk,
				device,
				first_usable,
				sectors_per_mib - 1,
				PartitionType.BiosBoot,
			)

			self._add_partition(
				disk,
				device,
				sectors_per_mib,
				(1 + esp_size) * sectors_per_mib - 1,
				PartitionType.EfiSystem,
			)

			if end_mib is not None:
				os_end = end_mib * sectors_per_mib - 1
			else:
				os_end = (last_usable + 1) // sectors_per_mib * sectors_per_mib - 1

			self._add_partition(
				disk,
				device,
				esp_end * sectors_per_mib,
				os_end,
				partition_type,
			)

			# legacy BIOS boot from 4Kn disks is not supported, keep the slot empty
			if block_device.is_4kn:
				disk.deletePartition(boot_slot)

			disk.commit()
		except (DiskException, PartitionException, IOException) as err:
			raise DiskError(f"unable to partition harddisk '{target_dev}': {err}") from err
