from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass
from pathlib import Path

from .bootloader import BootloaderInstaller, detect_kernel_abi
from .configuration import InstallConfig, LocaleInfo
from .disk.btrfs import btrfs_create, btrfs_filesystem_uuid, create_subvolume
from .disk.filesystem import create_esp, create_filesystem, create_swap, fs_setup
from .disk.inventory import DiskInventory, get_dev_uuid, get_disk_by_id_path
from .disk.lvm import LvmVolumeCreator, deactivate_volume_groups
from .disk.partitioner import Partitioner
from .disk.raid import StorageSelection, StorageSelector
from .disk.utils import mount, udevadm_trigger_block, umount, wipe_disk
from .disk.zfs import ZfsPool, load_zfs_module
from .exceptions import BootloaderError, DiskError, InstallationError, UserAbort
from .general import process_events_hook
from .hardware import RunEnvironment
from .models.device import BootDeviceInfo, PartitionResult, VolumeLayout
from .models.filesystem import FilesystemType, PartitionType, StorageBackend
from .mounts import MountStack
from .output import debug, error, info, warn
from .packages import PKG_MOUNTPOINT, BaseImageExtractor, PackageInstaller
from .progress import ProgressBridge
from .sizing import DEFAULT_POLICY, SizingPolicy, check_swap_size, clamp_zfs_arc_max, compute_swap_size
from .target import TargetSystem
from .target_config import FstabEntries, TargetConfigurator
from .ui.base import InstallerUI

# share of the overall progress for everything up to the base system extraction
MAXPER = 0.25


@dataclass
class InstallResult:
	success: bool
	message: str
	warning: str | None = None


class Installer:
	"""
	Drives one installation run: prepares the disks, extracts and configures
	the base system and makes it bootable.

	Everything mounted along the way is released again and a ZFS pool is
	exported, whether the run succeeded or not. Boot loader failures do not
	abort the run, they are reported together once everything else is done.
	"""

	def __init__(
		self,
		env: RunEnvironment,
		config: InstallConfig,
		ui: InstallerUI,
		inventory: DiskInventory | None = None,
		locales: LocaleInfo | None = None,
		policy: SizingPolicy = DEFAULT_POLICY,
	) -> None:
		self.env = env
		self.config = config
		self.ui = ui
		self.policy = policy
		self.inventory = inventory or DiskInventory(env.test_images)
		self.locales = locales or LocaleInfo.load(env.lib_dir / 'locale-info.json')
		self.progress = ProgressBridge(ui)

		self.filesystem: FilesystemType = config.filesys
		self.boot_devices: list[BootDeviceInfo] = []
		self.volumes: VolumeLayout | None = None
		self.pool: ZfsPool | None = None
		self.bootloader_error: BootloaderError | None = None

		if self.filesystem.is_zfs:
			pool_name = 'test_rpool' if env.is_test_mode else 'rpool'
			self.pool = ZfsPool(pool_name, env.product, config.zfs_opts)
			self.target_dir = self.pool.mountpoint
		else:
			self.target_dir = env.target_dir

		self.target = TargetSystem(self.target_dir)

	@property
	def backend(self) -> StorageBackend:
		return self.filesystem.backend

	def _update(self, frac: float, start: float, end: float, text: str | None = None) -> None:
		self.progress.update(frac, start, end, text)

	def run(self) -> InstallResult:
		"""
		Runs the installation and reports the outcome to the UI.
		"""
		start = time.monotonic()

		try:
			warning = self.extract_data()
		except UserAbort as err:
			# the user already made the decision, no error dialog for it
			info(f'Installation aborted by user: {err}')
			result = InstallResult(False, 'installation aborted by user')
		except Exception as err:
			error(f'Installation failed: {err}')
			result = InstallResult(False, str(err))
		else:
			message = 'Installation finished'
			if warning:
				self.ui.message(warning)
				message += ' with warnings'
			result = InstallResult(True, message, warning)

		debug(f'Elapsed extract time: {time.monotonic() - start:.2f}s')

		self.ui.finished(result.success, result.message)
		return result

	def extract_data(self) -> str | None:
		"""
		The installation itself. Returns the collected boot loader warnings
		on success. A fatal error is raised after the teardown, with the
		boot loader warnings appended if there were any.
		"""
		# keeps the front-end responsive while long commands run
		with process_events_hook(self.ui.process_events):
			return self._extract_data()

	def _extract_data(self) -> str | None:
		self.target_dir.mkdir(parents=True, exist_ok=True)

		if self.pool:
			load_zfs_module()

		captured: Exception | None = None
		self.bootloader_error = None

		with MountStack() as mounts:
			try:
				self._provision(mounts)
			except Exception as err:
				captured = err
			finally:
				self.progress.update(1, 0, 1, '')

			if captured and not isinstance(captured, UserAbort):
				error(str(captured))

		try:
			self._unmount_root()
			if self.pool and captured is None:
				self.pool.finalize()
		except DiskError as err:
			if captured is None:
				captured = err
			else:
				warn(str(err))

		if self.pool and captured is not None:
			# not finalized, but never left imported
			self.pool.export()

		bootloader_error = self.bootloader_error

		if captured is not None:
			if bootloader_error and not isinstance(captured, UserAbort):
				raise InstallationError(f'{captured}\n{bootloader_error.summary()}') from captured
			raise captured

		if bootloader_error:
			return bootloader_error.summary()

		return None

	def _unmount_root(self) -> None:
		if self.pool:
			self.pool.unmount_all()
		else:
			umount(self.target_dir, detach_loop=True)

	def _provision(self, mounts: MountStack) -> None:
		self._update(0, 0, MAXPER, 'cleanup root-disks')

		if self.env.is_test_mode:
			root_dev = self._prepare_test_target()
		else:
			deactivate_volume_groups()

			selector = StorageSelector(self.inventory, self.env.boot_type)
			selection = selector.select(self.filesystem, self.config.disk_selection, self.config.target_hd)

			match self.backend:
				case StorageBackend.Btrfs:
					root_dev = self._prepare_btrfs(selection)
				case StorageBackend.Zfs:
					root_dev = self._prepare_zfs(selection)
				case StorageBackend.Lvm:
					root_dev = self._prepare_lvm(selection)

		if self.pool:
			# be fast during the installation
			self.pool.set_sync('disabled')

		self._update(0.04, 0, MAXPER, 'create swap space')
		if self.volumes and self.volumes.swap_device:
			create_swap(self.volumes.swap_device)

		self._update(0.045, 0, MAXPER, 'creating root filesystems')
		for device in self.boot_devices:
			if device.esp_partition_path:
				create_esp(device.esp_partition_path, device.is_4kn)

		if self.backend == StorageBackend.Lvm:
			create_filesystem(root_dev, 'root', self.filesystem, self.progress.window(0.05, MAXPER))

		self._update(1, 0.05, MAXPER, f'mounting target {root_dev}')
		self._mount_target(mounts, root_dev)

		self._update(1, 0.05, MAXPER, 'extracting base system')
		BaseImageExtractor(self.env.base_image, self.env.base_file_count).extract(
			self.target_dir,
			self.progress.window(MAXPER, 0.5),
		)

		self._mount_chroot_filesystems(mounts)

		self._update(1, MAXPER, 0.5, 'configuring base system')
		configurator = TargetConfigurator(self.target, self.config, self.env, self.locales)
		self._configure_base_system(configurator, root_dev)
		self._install_packages(configurator)

		self._update(0.8, 0.95, 1, 'make system bootable')
		# kept on the instance so a later fatal error still reports them
		self.bootloader_error = self._make_bootable(configurator)

		configurator.remove_helpers()
		configurator.set_root_password()
		configurator.configure_product(
			self.backend,
			has_data_volume=bool(self.volumes and self.volumes.data_device),
			pool_name=self.pool.name if self.pool else '',
		)

	def _prepare_test_target(self) -> str:
		root_dev = str(self.env.test_images[0].resolve())
		umount(Path(root_dev))

		if self.filesystem.is_btrfs:
			if self.filesystem != FilesystemType.BtrfsRaid0:
				raise DiskError('unsupported btrfs mode (for testing environment)')

			btrfs_create([root_dev], 'single')
		elif self.pool:
			if self.filesystem != FilesystemType.ZfsRaid0:
				raise DiskError('unsupported zfs mode (for testing environment)')

			self.pool.destroy()
			self.pool.create([root_dev])

		return root_dev

	def _partitioner(self) -> Partitioner:
		return Partitioner(self.inventory, self.ui, self.policy, self.env.is_test_mode)

	def _partition_disks(self, selection: StorageSelection, partition_type: PartitionType) -> list[PartitionResult]:
		partitioner = self._partitioner()
		results: list[PartitionResult] = []

		for disk in selection.disks:
			result = partitioner.partition_bootable(disk.path, self.config.hdsize, partition_type)
			results.append(result)
			self.boot_devices.append(
				BootDeviceInfo(
					devname=disk.path,
					os_partition_path=result.os_partition_path,
					esp_partition_path=result.esp_partition_path,
					logical_block_size=disk.logical_block_size,
				)
			)

		udevadm_trigger_block()

		# stable names only show up once udev has seen the new partitions
		self.boot_devices = [
			dataclasses.replace(device, stable_by_id_path=get_disk_by_id_path(device.devname))
			for device in self.boot_devices
		]

		return results

	def _prepare_btrfs(self, selection: StorageSelection) -> str:
		assert selection.btrfs is not None

		for disk in selection.disks:
			wipe_disk(disk.path)

		self._update(0, 0.02, MAXPER, 'create partitions')
		self._partition_disks(selection, PartitionType.LinuxFilesystem)

		self._update(0, 0.03, MAXPER, 'create btrfs')
		btrfs_create([device.os_partition_path for device in self.boot_devices], selection.btrfs.mode)

		# simply point to the first disk
		return self.boot_devices[0].os_partition_path

	def _prepare_zfs(self, selection: StorageSelection) -> str:
		assert selection.zfs is not None and self.pool is not None

		self.pool.ask_existing_pool_rename_or_abort(self.ui)

		for disk in selection.disks:
			wipe_disk(disk.path)

		# every disk gets an ESP, firmware is inconsistent about which one it boots from
		self._update(0, 0.02, MAXPER, 'create partitions')
		self._partition_disks(selection, PartitionType.ZfsMember)

		replacements = {
			device.devname: get_disk_by_id_path(device.os_partition_path) or device.os_partition_path
			for device in self.boot_devices
		}

		self._update(0, 0.03, MAXPER, f'create {self.pool.name}')
		self.pool.create(selection.zfs.vdev_args(replacements))

		return self.pool.name

	def _prepare_lvm(self, selection: StorageSelection) -> str:
		target_hd = selection.disks[0].path
		if not Path(target_hd).is_block_device():
			raise DiskError(f"target '{target_hd}' is not a valid block device")

		wipe_disk(target_hd)

		self._update(0, 0.02, MAXPER, 'create partitions')
		results = self._partition_disks(selection, PartitionType.LinuxLvm)
		boot_device = self.boot_devices[0]
		os_size = results[0].os_size_kib

		self._update(0, 0.03, MAXPER, 'create LVs')

		swap_size = compute_swap_size(os_size, self.env.total_memory, self.config.swapsize, self.policy)
		check_swap_size(swap_size, os_size)

		creator = LvmVolumeCreator(
			self.env.product.volume_group,
			self.ui,
			separate_data=self.env.product.separates_guest_data,
			policy=self.policy,
		)
		self.volumes = creator.create(
			boot_device.os_partition_path,
			os_size,
			swap_size,
			maxroot_gib=self.config.maxroot,
			minfree_gib=self.config.minfree,
			maxvz_gib=self.config.maxvz,
		)

		# makes udev create /dev/disk/by-uuid
		udevadm_trigger_block(nowait=True)

		return self.volumes.root_device

	def _mount_target(self, mounts: MountStack, root_dev: str) -> None:
		target = self.target_dir

		if not self.pool:
			options = ['noatime']
			if self.filesystem.is_btrfs or self.filesystem == FilesystemType.Ext4:
				options.append('nobarrier')
			if self.filesystem.is_btrfs:
				options.extend(self.config.btrfs_opts.mount_options())

			# released after everything else, see _unmount_root()
			try:
				mount(root_dev, target, options=options)
			except DiskError as err:
				raise DiskError(f'unable to mount {root_dev}') from err

		for path in ('boot/efi', 'var/lib'):
			(target / path).mkdir(parents=True, exist_ok=True)

		if self.env.product.separates_guest_data:
			(target / 'var/lib/vz').mkdir(parents=True, exist_ok=True)
			(target / 'var/lib/pve').mkdir(parents=True, exist_ok=True)

			if self.filesystem.is_btrfs:
				create_subvolume(target / 'var/lib/pve/local-btrfs')

		hostrun = target / 'mnt/hostrun'
		hostrun.mkdir(parents=True, exist_ok=True)
		mounts.callback(_remove_dir, hostrun)
		mounts.bind(Path('/run'), hostrun)

	def _mount_chroot_filesystems(self, mounts: MountStack) -> None:
		target = self.target_dir

		mounts.virtual('tmpfs', target / 'tmp')
		mounts.bind(self.env.package_dir, target / PKG_MOUNTPOINT.lstrip('/'))
		mounts.virtual('proc', target / 'proc')
		mounts.virtual('sysfs', target / 'sys')

		if self.env.has_uefi:
			mounts.virtual('efivarfs', target / 'sys/firmware/efi/efivars')

		mounts.chroot_bind(target, '/mnt/hostrun', '/run')

	def _fstab_entries(self, root_dev: str) -> FstabEntries:
		root: str | None = None

		if self.filesystem.is_btrfs:
			mount_options = ','.join(['defaults', *self.config.btrfs_opts.mount_options()])
			root = f'UUID={btrfs_filesystem_uuid(root_dev)} / btrfs {mount_options} 0 1'
		elif not self.pool:
			mount_options = fs_setup(self.filesystem).root_mount_options
			root = f'{root_dev} / {self.filesystem.value} {mount_options} 0 1'

		# /boot/efi is vfat without journaling, so it is only mounted where grub needs it
		esp: str | None = None
		if self.env.has_uefi and not self.pool and self.boot_devices:
			if esp_dev := self.boot_devices[0].esp_partition_path:
				uuid = get_dev_uuid(esp_dev)
				esp = f'UUID={uuid}' if uuid else esp_dev

		return FstabEntries(
			root=root,
			esp=esp,
			swap=self.volumes.swap_device if self.volumes else None,
		)

	def _configure_base_system(self, configurator: TargetConfigurator, root_dev: str) -> None:
		configurator.configure_hosts()
		configurator.configure_interfaces()
		configurator.configure_dns()
		configurator.write_fstab(self._fstab_entries(root_dev))
		configurator.install_helpers()
		configurator.create_machine_id()
		configurator.set_install_mode(True)
		configurator.preseed_debconf(self.boot_devices)

	def _install_packages(self, configurator: TargetConfigurator) -> None:
		installer = PackageInstaller(
			self.target,
			self.env.package_dir,
			self.env.boot_type,
			# dpkg is extremely slow on btrfs without it
			unsafe_io=self.filesystem.is_btrfs,
		)

		package_count = installer.unpack(self.progress.window(0.5, 0.75))
		installer.configure(self.progress.window(0.75, 0.95), package_count)

		configurator.configure_postfix()
		configurator.set_install_mode(False)
		configurator.configure_timezone()
		configurator.configure_apt()
		configurator.allow_root_ssh_login()
		configurator.save_installer_settings()

	def _make_bootable(self, configurator: TargetConfigurator) -> BootloaderError | None:
		if self.pool:
			self.pool.write_boot_config(self.target_dir)
			arc_max = clamp_zfs_arc_max(self.config.zfs_opts.arc_max, self.env.total_memory, self.policy)
			ZfsPool.write_module_conf(self.target_dir, arc_max)

		configurator.remove_boot_diversions()
		kernel_abi = detect_kernel_abi(self.target_dir)

		if self.env.is_test_mode:
			return None

		mtab = self.target.path('/etc/mtab')
		mtab.unlink(missing_ok=True)
		mtab.symlink_to('/proc/mounts')

		bootloader = BootloaderInstaller(
			self.target,
			self.boot_devices,
			self.env.boot_type,
			use_proxmox_boot_tool=self.pool is not None,
		)

		with MountStack() as dev_mounts:
			dev_mounts.bind(Path('/dev'), self.target.path('/dev'))

			try:
				bootloader.install(kernel_abi)
			except BootloaderError as err:
				return err

		return None


def _remove_dir(path: Path) -> None:
	try:
		path.rmdir()
	except OSError as err:
		debug(f'Unable to remove {path}: {err}')
