from __future__ import annotations

from dataclasses import dataclass, field
from functools import cached_property
from pathlib import Path

from .models.product import Product
from .output import debug

_MEMINFO = Path('/proc/meminfo')
_EFI_FIRMWARE = Path('/sys/firmware/efi')
_CMDLINE = Path('/proc/cmdline')
_SYS_NET = Path('/sys/class/net')

# used when /proc/meminfo cannot be read
_FALLBACK_MEMORY_MIB = 512


def _read_total_memory() -> int:
	try:
		for line in _MEMINFO.read_text().splitlines():
			key, _, value = line.partition(':')
			if key == 'MemTotal':
				return int(value.split()[0]) // 1024
	except (OSError, ValueError, IndexError) as err:
		debug(f'Unable to read total memory: {err}')

	return _FALLBACK_MEMORY_MIB


def _read_kernel_cmdline() -> str:
	try:
		return _CMDLINE.read_text().strip()
	except OSError:
		return ''


def _list_network_interfaces() -> list[str]:
	try:
		return sorted(entry.name for entry in _SYS_NET.iterdir() if entry.name != 'lo')
	except OSError:
		return []


def default_zfs_arc_max(product: Product, total_memory: int) -> int:
	"""
	Default ARC ceiling in MiB: 10% of the system memory, clamped to
	[64, 16384] MiB. Products that are not hypervisors keep the ZFS default
	(0) unless the system is low on memory.
	"""
	match product:
		case Product.PBS | Product.PDM:
			if total_memory >= 2048:
				return 0
		case Product.PMG:
			if total_memory >= 4096:
				return 0

	return max(64, min(16384, int(total_memory / 10 + 0.5)))


@dataclass
class RunEnvironment:
	product: Product = Product.PVE
	test_images: list[Path] = field(default_factory=list)
	target_dir: Path = Path('/target')
	iso_dir: Path = Path('/cdrom')
	lib_dir: Path = Path('/var/lib/proxmox-installer')

	@cached_property
	def total_memory(self) -> int:
		return _read_total_memory()

	@cached_property
	def boot_type(self) -> str:
		return 'efi' if _EFI_FIRMWARE.is_dir() else 'bios'

	@cached_property
	def kernel_cmdline(self) -> str:
		return _read_kernel_cmdline()

	@cached_property
	def network_interfaces(self) -> list[str]:
		return _list_network_interfaces()

	@property
	def is_test_mode(self) -> bool:
		return len(self.test_images) > 0

	@property
	def has_uefi(self) -> bool:
		return self.boot_type == 'efi'

	@property
	def default_zfs_arc_max(self) -> int:
		return default_zfs_arc_max(self.product, self.total_memory)

	@property
	def package_dir(self) -> Path:
		return self.iso_dir / 'proxmox' / 'packages'

	@property
	def base_image(self) -> Path:
		return self.iso_dir / f'{self.product.value}-base.squashfs'

	@property
	def base_file_count(self) -> Path:
		return self.iso_dir / 'proxmox' / f'{self.product.value}-base.cnt'
