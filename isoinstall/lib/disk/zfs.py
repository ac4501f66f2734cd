from __future__ import annotations

import re
import secrets
import time
from pathlib import Path

from ..configuration import ZfsOptions
from ..exceptions import DiskError, SysCallError, UserAbort
from ..general import SysCommand, run_best_effort
from ..models.device import ZpoolImportInfo
from ..models.product import Product
from ..output import debug, info, warn
from ..ui.base import InstallerUI

_ZFS_DEVICE = Path('/dev/zfs')

_POOL_LINE = re.compile(r'^\s+pool: (.+)$')
_ATTRIBUTE_LINE = re.compile(r'^\s*(id|state|status|action): (.+)$')


def load_zfs_module(attempts: int = 5, zfs_device: Path = _ZFS_DEVICE) -> None:
	for _ in range(attempts):
		run_best_effort(['modprobe', 'zfs'])
		if zfs_device.exists():
			return
		time.sleep(1)

	raise DiskError('unable to load zfs kernel module')


def parse_zpool_import(output: str) -> list[ZpoolImportInfo]:
	"""
	``zpool import`` has no machine readable output, so the listing is
	scraped. Anything before the first ``pool:`` line is ignored.
	"""
	pools: list[ZpoolImportInfo] = []
	current: dict[str, str] | None = None

	for line in output.splitlines():
		if match := _POOL_LINE.match(line):
			if current:
				pools.append(ZpoolImportInfo(**current))
			current = {'name': match.group(1).strip()}
			continue

		if current is None:
			continue

		if match := _ATTRIBUTE_LINE.match(line):
			current[match.group(1)] = match.group(2).strip()

	if current:
		pools.append(ZpoolImportInfo(**current))

	return pools


def get_exported_pools() -> list[ZpoolImportInfo]:
	try:
		output = SysCommand(['zpool', 'import']).decode()
	except SysCallError as err:
		debug(f'Unable to list importable zpools: {err.message}')
		return []

	return parse_zpool_import(output)


class ZfsPool:
	def __init__(self, name: str, product: Product, options: ZfsOptions) -> None:
		self.name = name
		self.product = product
		self.options = options

	@property
	def root_volume_name(self) -> str:
		return f'{self.product.value}-1'

	@property
	def root_dataset(self) -> str:
		return f'{self.name}/ROOT/{self.root_volume_name}'

	@property
	def mountpoint(self) -> Path:
		return Path('/') / self.root_dataset

	@staticmethod
	def _zfs(cmd: list[str], failure: str) -> None:
		try:
			SysCommand(cmd)
		except SysCallError as err:
			raise DiskError(failure) from err

	def ask_existing_pool_rename_or_abort(self, ui: InstallerUI) -> None:
		"""
		An importable pool with our name, e.g. from an old installation on a
		disk which is not a target, would clash at boot.
		"""
		duplicates = [pool for pool in get_exported_pools() if pool.name == self.name]
		if not duplicates:
			return

		renames: list[tuple[ZpoolImportInfo, str]] = []
		message = f"Detected existing ZFS pool(s) named '{self.name}'! Do you want to:\n"
		for pool in duplicates:
			new_name = f'{self.name}-OLD-{secrets.token_hex(4).upper()}'
			renames.append((pool, new_name))
			message += f"rename pool '{self.name}' (id {pool.id}) to '{new_name}'\n"
		message += 'or cancel the installation?'

		if not ui.prompt(message):
			warn(f"Canceled installation by user, due to already existing ZFS pool '{self.name}'")
			raise UserAbort(f"existing ZFS pool '{self.name}'")

		for pool, new_name in renames:
			self._zfs(
				['zpool', 'import', '-f', '-N', pool.id or pool.name, new_name],
				f"unable to rename ZFS pool '{self.name}' to '{new_name}'",
			)
			self._zfs(['zpool', 'export', new_name], f"unable to export ZFS pool '{new_name}'")

	def create(self, vdev_args: list[str]) -> None:
		info(f'Creating ZFS pool {self.name}: {" ".join(vdev_args)}')

		cmd = ['zpool', 'create', '-f', '-o', 'cachefile=none']
		if self.options.ashift is not None:
			cmd += ['-o', f'ashift={self.options.ashift}']

		self._zfs(cmd + [self.name, *vdev_args], 'unable to create zfs root pool')
		self._zfs(['zfs', 'create', f'{self.name}/ROOT'], f'unable to create zfs {self.name}/ROOT volume')

		if self.product.separates_guest_data:
			self._zfs(['zfs', 'create', f'{self.name}/data'], f'unable to create zfs {self.name}/data volume')

		self._zfs(['zfs', 'create', self.root_dataset], f'unable to create zfs {self.root_dataset} volume')

		# relatime is fast enough for the installation and for production
		self._zfs(['zfs', 'set', 'atime=on', 'relatime=on', self.name], 'unable to set zfs properties')

		# only set what differs from the ZFS defaults
		if self.options.compress != 'off':
			run_best_effort(['zfs', 'set', f'compression={self.options.compress}', self.name])
		if self.options.checksum != 'on':
			run_best_effort(['zfs', 'set', f'checksum={self.options.checksum}', self.name])
		if self.options.copies != 1:
			run_best_effort(['zfs', 'set', f'copies={self.options.copies}', self.name])

	def destroy(self) -> None:
		run_best_effort(['zpool', 'destroy', self.name])

	def set_sync(self, value: str) -> None:
		self._zfs(['zfs', 'set', f'sync={value}', self.name], 'unable to set zfs properties')

	def unmount_all(self) -> None:
		self._zfs(['zfs', 'umount', '-a'], 'unable to unmount zfs')

	def finalize(self) -> None:
		"""
		Restores production settings, marks the boot dataset and exports the
		pool so the installed system can import it cleanly.
		"""
		self.set_sync('standard')
		self._zfs(['zfs', 'set', 'mountpoint=/', self.root_dataset], 'zfs set mountpoint failed')
		self._zfs(['zpool', 'set', f'bootfs={self.root_dataset}', self.name], 'zpool set bootfs failed')
		self.export()

	def export(self) -> None:
		run_best_effort(['zpool', 'export', self.name])

	@property
	def kernel_cmdline(self) -> str:
		return f'root=ZFS={self.root_dataset} boot=zfs'

	def write_boot_config(self, target: Path) -> None:
		# keep whatever the distribution puts on the kernel cmdline
		grub_snippet = target / 'etc/default/grub.d/zfs.cfg'
		grub_snippet.parent.mkdir(parents=True, exist_ok=True)
		grub_snippet.write_text(f'GRUB_CMDLINE_LINUX="$GRUB_CMDLINE_LINUX {self.kernel_cmdline}"')

		cmdline = target / 'etc/kernel/cmdline'
		cmdline.parent.mkdir(parents=True, exist_ok=True)
		cmdline.write_text(f'{self.kernel_cmdline}\n')

	@staticmethod
	def write_module_conf(target: Path, arc_max_mib: int) -> None:
		if arc_max_mib <= 0:
			return

		conf = target / 'etc/modprobe.d/zfs.conf'
		conf.parent.mkdir(parents=True, exist_ok=True)
		conf.write_text(f'options zfs zfs_arc_max={arc_max_mib * 1024 * 1024}\n')
