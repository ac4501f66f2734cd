from __future__ import annotations

import secrets

from pydantic import ValidationError

from ..exceptions import DiskError, SysCallError, UserAbort
from ..general import SysCommand, run_best_effort
from ..models.device import LvmReportOutput, VolumeLayout
from ..output import debug, info, warn
from ..sizing import DEFAULT_POLICY, LvmSizing, SizingPolicy, compute_lvm_layout
from ..ui.base import InstallerUI


def deactivate_volume_groups() -> None:
	"""
	Volume groups left active from a previous installation keep their
	disks busy, so they are all switched off before partitioning.
	"""
	run_best_effort(['vgchange', '-an'])


def get_pv_list_from_vgname(vg_name: str) -> dict[str, list[str]]:
	"""
	Maps the UUID of each volume group called ``vg_name`` to the physical
	volumes backing it.
	"""
	cmd = [
		'pvs',
		'--reportformat', 'json',
		'--noheadings',
		'-o', 'pv_name,vg_uuid',
		'-S', f'vg_name={vg_name}',
	]

	try:
		output = SysCommand(cmd).decode()
	except SysCallError as err:
		debug(f'Unable to list physical volumes: {err.message}')
		return {}

	# for whatever reason the output sometimes contains "File descriptor X leaked" lines
	data = '\n'.join(line for line in output.splitlines() if 'File descriptor' not in line)

	try:
		report = LvmReportOutput.model_validate_json(data)
	except ValidationError as err:
		raise DiskError(f'Unable to parse physical volume listing: {err}') from err

	result: dict[str, list[str]] = {}
	for pv in report.physical_volumes():
		result.setdefault(pv.vg_uuid, []).append(pv.pv_name)

	return result


class LvmVolumeCreator:
	"""
	Creates the volume group and the swap, root and (optionally) thin-pool
	data volumes on the OS partition of a single target disk.
	"""

	def __init__(
		self,
		vg_name: str,
		ui: InstallerUI,
		separate_data: bool,
		policy: SizingPolicy = DEFAULT_POLICY,
	) -> None:
		self.vg_name = vg_name
		self._ui = ui
		self._separate_data = separate_data
		self._policy = policy

	@staticmethod
	def _lvm(cmd: list[str], failure: str) -> None:
		try:
			SysCommand(cmd)
		except SysCallError as err:
			raise DiskError(failure) from err

	def ask_existing_vg_rename_or_abort(self) -> None:
		# happens if a disk with an older installation is present but not a target
		duplicates = get_pv_list_from_vgname(self.vg_name)
		if not duplicates:
			return

		renames: dict[str, str] = {}
		message = f"Detected existing '{self.vg_name}' Volume Group(s)! Do you want to:\n"
		for vg_uuid, pvs in duplicates.items():
			new_name = f'{self.vg_name}-OLD-{secrets.token_hex(4).upper()}'
			renames[vg_uuid] = new_name
			message += f"rename VG backed by PV '{', '.join(pvs)}' to '{new_name}'\n"
		message += 'or cancel the installation?'

		if not self._ui.prompt(message):
			warn(f"Canceled installation by user, due to already existing volume group '{self.vg_name}'")
			raise UserAbort(f"existing volume group '{self.vg_name}'")

		for vg_uuid, new_name in renames.items():
			pvs = ', '.join(duplicates[vg_uuid])
			self._lvm(
				['vgrename', vg_uuid, new_name],
				f"could not rename VG from '{pvs}' ({vg_uuid}) to '{new_name}'!",
			)

	def compute(
		self,
		os_size_kib: int,
		swap_kib: int,
		maxroot_gib: float | None = None,
		minfree_gib: float | None = None,
		maxvz_gib: float | None = None,
	) -> LvmSizing:
		return compute_lvm_layout(
			os_size_kib,
			swap_kib,
			self._separate_data,
			maxroot_gib=maxroot_gib,
			minfree_gib=minfree_gib,
			maxvz_gib=maxvz_gib,
			policy=self._policy,
		)

	def create(
		self,
		lvm_dev: str,
		os_size_kib: int,
		swap_kib: int,
		maxroot_gib: float | None = None,
		minfree_gib: float | None = None,
		maxvz_gib: float | None = None,
	) -> VolumeLayout:
		self.ask_existing_vg_rename_or_abort()

		# the sizing is checked before anything is written to the disk
		sizing = self.compute(os_size_kib, swap_kib, maxroot_gib, minfree_gib, maxvz_gib)

		info(f'Creating LVM volume group {self.vg_name} on {lvm_dev}')

		# --metadatasize 250k results in "pe_start = 512", aligned on a 128k boundary
		self._lvm(
			['pvcreate', '--metadatasize', '250k', '-y', '-ff', lvm_dev],
			f'unable to initialize physical volume {lvm_dev}',
		)
		self._lvm(['vgcreate', self.vg_name, lvm_dev], f"unable to create volume group '{self.vg_name}'")

		swap_dev: str | None = None
		if sizing.swap_kib:
			self._lvm(
				['lvcreate', '-Wy', '--yes', f'-L{sizing.swap_kib}K', '-nswap', self.vg_name],
				'unable to create swap volume',
			)
			swap_dev = f'/dev/{self.vg_name}/swap'

		self._lvm(
			['lvcreate', '-Wy', '--yes', f'-L{sizing.root_kib}K', '-nroot', self.vg_name],
			'unable to create root volume',
		)

		data_dev: str | None = None
		if sizing.create_thinpool:
			self._lvm(
				['lvcreate', '-Wy', '--yes', f'-L{sizing.data_kib}K', '-ndata', self.vg_name],
				'unable to create data volume',
			)
			self._lvm(
				[
					'lvconvert', '--yes',
					'--type', 'thin-pool',
					'--poolmetadatasize', f'{sizing.metadata_kib}K',
					f'{self.vg_name}/data',
				],
				'unable to create data thin-pool',
			)
			data_dev = f'/dev/{self.vg_name}/data'
		elif self._separate_data and maxvz_gib is None:
			self._ui.message('Skipping auto-creation of LVM thinpool for guest data due to low space.')

		self._lvm(['vgchange', '-a', 'y', self.vg_name], 'unable to activate volume group')

		return VolumeLayout(
			root_device=f'/dev/{self.vg_name}/root',
			swap_device=swap_dev,
			data_device=data_dev,
		)
