from __future__ import annotations

import re
from pathlib import Path

from .disk.utils import mount, umount
from .exceptions import BootloaderError, DiskError, InstallationError
from .models.device import BootDeviceInfo
from .output import error, info, warn
from .target import TargetSystem

_KERNEL_ABI = re.compile(r'^\d+\.\d+\.\d+-\d+-pve$')


def detect_kernel_abi(target: Path) -> str:
	found = [entry.name for entry in sorted((target / 'lib' / 'modules').glob('*')) if _KERNEL_ABI.match(entry.name)]

	if len(found) > 1:
		raise InstallationError('found multiple kernels')
	if not found:
		raise InstallationError('unable to detect kernel version')

	return found[0]


class BootloaderInstaller:
	"""
	Makes every disk in the boot set bootable. A failure on one disk or
	boot method is collected and the remaining ones are still attempted,
	the collected failures are raised together at the end.
	"""

	def __init__(
		self,
		target: TargetSystem,
		boot_devices: list[BootDeviceInfo],
		boot_type: str,
		use_proxmox_boot_tool: bool = False,
	) -> None:
		self.target = target
		self.boot_devices = boot_devices
		self.boot_type = boot_type
		self.use_proxmox_boot_tool = use_proxmox_boot_tool

	@property
	def native_4k_disk_bootable(self) -> bool:
		return any(dev.is_4kn for dev in self.boot_devices)

	def install(self, kernel_abi: str) -> None:
		errors: list[str] = []

		try:
			self.target.run(
				['/usr/sbin/update-initramfs', '-c', '-k', kernel_abi],
				'unable to install initramfs',
			)

			for device in self.boot_devices:
				errors += self._install_on(device)

			self.target.run(['/usr/sbin/update-grub'], 'unable to update boot loader config')
		except (InstallationError, DiskError) as err:
			errors.append(str(err))

		if errors:
			bootloader_error = BootloaderError(errors)
			warn(bootloader_error.summary())
			raise bootloader_error

	def _install_on(self, device: BootDeviceInfo) -> list[str]:
		errors: list[str] = []

		if self.use_proxmox_boot_tool:
			if device.esp_partition_path:
				try:
					self.prepare_proxmox_boot_esp(device.esp_partition_path)
				except InstallationError as err:
					errors.append(str(err))
			return errors

		if not self.native_4k_disk_bootable:
			try:
				self.install_grub_bios(device.devname)
			except InstallationError as err:
				errors.append(str(err))

		if device.esp_partition_path:
			try:
				self.prepare_grub_efi_boot_esp(device.devname, device.esp_partition_path)
			except (InstallationError, DiskError) as err:
				errors.append(str(err))

		return errors

	def prepare_proxmox_boot_esp(self, esp: str) -> None:
		info(f'Initializing ESP {esp} with proxmox-boot-tool')
		self.target.run(
			['proxmox-boot-tool', 'init', esp],
			f"unable to init ESP and install proxmox-boot loader on '{esp}'",
		)

	def install_grub_bios(self, dev: str) -> None:
		info(f'Installing i386-pc boot loader on {dev}')
		self.target.run(
			['/usr/sbin/grub-install', '--target', 'i386-pc', '--no-floppy', '--bootloader-id=proxmox', dev],
			f"unable to install the i386-pc boot loader on '{dev}'",
		)

	def prepare_grub_efi_boot_esp(self, dev: str, esp: str) -> None:
		efi_dir = self.target.path('/boot/efi')
		mount(esp, efi_dir, mount_fs='vfat')

		failure: Exception | None = None

		try:
			self._install_grub_efi(dev, efi_dir)
		except (InstallationError, OSError) as err:
			failure = err

		if not umount(efi_dir):
			error(f'unable to umount {efi_dir}')

		if failure:
			raise InstallationError(f"failed to prepare EFI boot using Grub on '{esp}': {failure}") from failure

	def _install_grub_efi(self, dev: str, efi_dir: Path) -> None:
		info(f'Installing x86_64-efi boot loader on {dev}')

		installed = self.target.run_best_effort(
			['/usr/sbin/grub-install', '--target', 'x86_64-efi', '--no-floppy', '--bootloader-id=proxmox', dev]
		)

		if not installed:
			if self.boot_type == 'efi':
				raise InstallationError(f"unable to install the EFI boot loader on '{dev}'")

			warn(f"unable to install the EFI boot loader on '{dev}', ignoring (not booted using UEFI)")

		# the fallback boot file, OVMF does not boot without it
		fallback_dir = efi_dir / 'EFI' / 'BOOT'
		fallback_dir.mkdir(parents=True, exist_ok=True)

		try:
			(fallback_dir / 'BOOTx64.EFI').write_bytes((efi_dir / 'EFI' / 'proxmox' / 'grubx64.efi').read_bytes())
		except OSError as err:
			raise InstallationError('unable to copy efi boot loader') from err
