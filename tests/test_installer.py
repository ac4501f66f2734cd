from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from isoinstall.lib.configuration import InstallConfig, LocaleInfo
from isoinstall.lib.exceptions import BootloaderError, DiskError, InstallationError, UserAbort
from isoinstall.lib.general import SysCommand
from isoinstall.lib.hardware import RunEnvironment
from isoinstall.lib.installer import Installer
from isoinstall.lib.models.device import BootDeviceInfo, VolumeLayout
from isoinstall.lib.models.product import Product
from isoinstall.lib.mounts import MountStack

from conftest import FakeUI, StaticInventory, make_disk


def _installer(tmp_path: Path, ui: FakeUI, filesys: str = 'ext4', product: Product = Product.PVE, **values: Any) -> Installer:
	env = RunEnvironment(
		product=product,
		test_images=[tmp_path / 'disk.img'],
		target_dir=tmp_path / 'target',
		iso_dir=tmp_path / 'cdrom',
		lib_dir=tmp_path / 'lib',
	)
	config = InstallConfig().merge({'filesys': filesys, **values})
	inventory = StaticInventory([make_disk(0, str(tmp_path / 'disk.img'))])
	return Installer(env, config, ui, inventory=inventory, locales=LocaleInfo())


def test_zfs_pool_in_test_mode(tmp_path: Path, fake_ui: FakeUI) -> None:
	installer = _installer(tmp_path, fake_ui, 'zfs (RAID0)')

	assert installer.pool is not None
	assert installer.pool.name == 'test_rpool'
	assert installer.target_dir == Path('/test_rpool/ROOT/pve-1')


@patch.object(Installer, 'extract_data', return_value=None)
def test_run_success(_mock_extract: MagicMock, tmp_path: Path, fake_ui: FakeUI) -> None:
	result = _installer(tmp_path, fake_ui).run()

	assert result.success
	assert fake_ui.result == (True, 'Installation finished')
	assert fake_ui.messages == []


@patch.object(Installer, 'extract_data', return_value='bootloader setup errors:\n- disk 2\n')
def test_run_success_with_bootloader_warning(_mock_extract: MagicMock, tmp_path: Path, fake_ui: FakeUI) -> None:
	result = _installer(tmp_path, fake_ui).run()

	assert result.success
	assert result.warning == 'bootloader setup errors:\n- disk 2\n'
	assert fake_ui.messages == ['bootloader setup errors:\n- disk 2\n']
	assert fake_ui.result == (True, 'Installation finished with warnings')


@patch.object(Installer, 'extract_data', side_effect=DiskError('unable to create zfs root pool'))
def test_run_failure(_mock_extract: MagicMock, tmp_path: Path, fake_ui: FakeUI) -> None:
	result = _installer(tmp_path, fake_ui).run()

	assert not result.success
	assert fake_ui.result == (False, 'unable to create zfs root pool')


@patch.object(Installer, 'extract_data', side_effect=UserAbort("existing volume group 'pve'"))
def test_run_user_abort(_mock_extract: MagicMock, tmp_path: Path, fake_ui: FakeUI) -> None:
	result = _installer(tmp_path, fake_ui).run()

	assert not result.success
	assert fake_ui.result == (False, 'installation aborted by user')
	assert fake_ui.errors == []


@patch('isoinstall.lib.installer.umount', return_value=True)
@patch.object(Installer, '_provision', return_value=None)
def test_extract_data_unmounts_root(_mock_provision: MagicMock, mock_umount: MagicMock, tmp_path: Path, fake_ui: FakeUI) -> None:
	installer = _installer(tmp_path, fake_ui)

	assert installer.extract_data() is None

	mock_umount.assert_called_once_with(tmp_path / 'target', detach_loop=True)
	assert fake_ui.progress_updates[-1] == (1.0, '')


@patch('isoinstall.lib.installer.load_zfs_module')
@patch.object(Installer, '_provision')
def test_zfs_pool_finalized_after_success(mock_provision: MagicMock, _mock_load: MagicMock, tmp_path: Path, fake_ui: FakeUI) -> None:
	installer = _installer(tmp_path, fake_ui, 'zfs (RAID0)')
	installer.target_dir = tmp_path / 'target'
	installer.pool = MagicMock()

	def _provision(_mounts: MountStack) -> None:
		installer.bootloader_error = BootloaderError(["unable to init ESP and install proxmox-boot loader on '/dev/sdb2'"])

	mock_provision.side_effect = _provision

	warning = installer.extract_data()

	assert warning == "bootloader setup errors:\n- unable to init ESP and install proxmox-boot loader on '/dev/sdb2'\n"
	installer.pool.unmount_all.assert_called_once()
	installer.pool.finalize.assert_called_once()
	installer.pool.export.assert_not_called()


@patch('isoinstall.lib.installer.load_zfs_module')
@patch.object(Installer, '_provision', side_effect=DiskError('unable to mount /dev/sda3'))
def test_zfs_pool_exported_after_failure(_mock_provision: MagicMock, _mock_load: MagicMock, tmp_path: Path, fake_ui: FakeUI) -> None:
	installer = _installer(tmp_path, fake_ui, 'zfs (RAID0)')
	installer.target_dir = tmp_path / 'target'
	installer.pool = MagicMock()

	with pytest.raises(DiskError, match='unable to mount /dev/sda3'):
		installer.extract_data()

	installer.pool.unmount_all.assert_called_once()
	installer.pool.finalize.assert_not_called()
	installer.pool.export.assert_called_once()


@patch('isoinstall.lib.installer.umount', return_value=True)
@patch.object(Installer, '_provision', side_effect=UserAbort('declined'))
def test_user_abort_passes_through(_mock_provision: MagicMock, _mock_umount: MagicMock, tmp_path: Path, fake_ui: FakeUI) -> None:
	with pytest.raises(UserAbort):
		_installer(tmp_path, fake_ui).extract_data()


@patch('isoinstall.lib.installer.get_dev_uuid', return_value='ABCD-1234')
def test_fstab_entries_lvm(_mock_uuid: MagicMock, tmp_path: Path, fake_ui: FakeUI) -> None:
	installer = _installer(tmp_path, fake_ui, 'xfs')
	installer.env.boot_type = 'efi'
	installer.boot_devices = [BootDeviceInfo('/dev/sda', '/dev/sda3', '/dev/sda2', 512)]
	installer.volumes = VolumeLayout(root_device='/dev/pve/root', swap_device='/dev/pve/swap')

	entries = installer._fstab_entries('/dev/pve/root')

	assert entries.root == '/dev/pve/root / xfs defaults 0 1'
	assert entries.esp == 'UUID=ABCD-1234'
	assert entries.swap == '/dev/pve/swap'


def test_fstab_entries_zfs(tmp_path: Path, fake_ui: FakeUI) -> None:
	installer = _installer(tmp_path, fake_ui, 'zfs (RAID1)')
	installer.env.boot_type = 'efi'
	installer.boot_devices = [BootDeviceInfo('/dev/sda', '/dev/sda3', '/dev/sda2', 512)]

	entries = installer._fstab_entries('rpool')

	assert entries.root is None
	assert entries.esp is None
	assert entries.swap is None


@patch('isoinstall.lib.disk.zfs.run_best_effort', return_value=True)
@patch('isoinstall.lib.disk.zfs.SysCommand', autospec=True)
@patch('isoinstall.lib.installer.load_zfs_module')
@patch.object(Installer, '_provision', side_effect=InstallationError('unable to extract base system'))
def test_failed_zfs_run_exports_pool(
	_mock_provision: MagicMock,
	_mock_load: MagicMock,
	mock_sys_command: MagicMock,
	mock_best_effort: MagicMock,
	tmp_path: Path,
	fake_ui: FakeUI,
) -> None:
	installer = _installer(tmp_path, fake_ui, 'zfs (RAID0)')
	installer.target_dir = tmp_path / 'target'

	with pytest.raises(InstallationError, match='unable to extract base system'):
		installer.extract_data()

	# no production settings on a failed run, but the pool is released
	assert [c.args[0] for c in mock_sys_command.call_args_list] == [['zfs', 'umount', '-a']]
	mock_best_effort.assert_called_once_with(['zpool', 'export', 'test_rpool'])


@patch('isoinstall.lib.installer.umount', return_value=True)
@patch('isoinstall.lib.installer.TargetConfigurator')
@patch('isoinstall.lib.installer.BaseImageExtractor')
@patch('isoinstall.lib.installer.create_filesystem')
@patch.object(Installer, '_make_bootable')
@patch.object(Installer, '_install_packages')
@patch.object(Installer, '_configure_base_system')
@patch.object(Installer, '_mount_chroot_filesystems')
@patch.object(Installer, '_mount_target')
def test_bootloader_errors_kept_on_later_failure(
	_mock_mount_target: MagicMock,
	_mock_chroot: MagicMock,
	_mock_base_system: MagicMock,
	_mock_packages: MagicMock,
	mock_make_bootable: MagicMock,
	_mock_mkfs: MagicMock,
	_mock_extractor: MagicMock,
	mock_configurator: MagicMock,
	_mock_umount: MagicMock,
	tmp_path: Path,
	fake_ui: FakeUI,
) -> None:
	mock_make_bootable.return_value = BootloaderError(["unable to install the i386-pc boot loader on '/dev/sdb'"])
	configurator = mock_configurator.return_value
	configurator.set_root_password.side_effect = InstallationError('unable to set root password')

	result = _installer(tmp_path, fake_ui).run()

	assert not result.success
	assert result.message == (
		'unable to set root password\n'
		'bootloader setup errors:\n'
		"- unable to install the i386-pc boot loader on '/dev/sdb'\n"
	)
	configurator.configure_product.assert_not_called()


@patch('isoinstall.lib.installer.umount', return_value=True)
@patch.object(Installer, '_provision')
def test_ui_events_pumped_while_commands_run(mock_provision: MagicMock, _mock_umount: MagicMock, tmp_path: Path, fake_ui: FakeUI) -> None:
	pumped: list[int] = []

	def _provision(_mounts: MountStack) -> None:
		SysCommand(['sh', '-c', 'sleep 0.5'])
		pumped.append(fake_ui.events)

	mock_provision.side_effect = _provision

	_installer(tmp_path, fake_ui).extract_data()

	assert pumped[0] >= 2


@patch('isoinstall.lib.installer.btrfs_filesystem_uuid', return_value='5f0b3c1e-1d2a-4b7c-9e8f-0a1b2c3d4e5f')
def test_fstab_entries_btrfs_compression(_mock_uuid: MagicMock, tmp_path: Path, fake_ui: FakeUI) -> None:
	installer = _installer(tmp_path, fake_ui, 'btrfs (RAID1)', btrfs_opts={'compress': 'zstd'})

	entries = installer._fstab_entries('/dev/sda3')

	assert entries.root == 'UUID=5f0b3c1e-1d2a-4b7c-9e8f-0a1b2c3d4e5f / btrfs defaults,compress=zstd 0 1'


@patch('isoinstall.lib.installer.create_subvolume')
@patch('isoinstall.lib.installer.mount')
def test_btrfs_root_mounted_with_compression(mock_mount: MagicMock, mock_subvolume: MagicMock, tmp_path: Path, fake_ui: FakeUI) -> None:
	installer = _installer(tmp_path, fake_ui, 'btrfs (RAID1)', btrfs_opts={'compress': 'lzo'})

	installer._mount_target(MagicMock(), '/dev/sda3')

	mock_mount.assert_called_once_with('/dev/sda3', tmp_path / 'target', options=['noatime', 'nobarrier', 'compress=lzo'])
	mock_subvolume.assert_called_once_with(tmp_path / 'target/var/lib/pve/local-btrfs')


@pytest.mark.parametrize(
	'sizes, selection, message',
	[
		([100, 100, 100, 50], {0: 0, 1: 1, 2: 2, 3: 3}, 'mirrored disks must have same size'),
		([100, 100, 100, 100], {0: 0, 1: 1, 2: 2, 3: 0}, "device '/dev/sda' is used more than once"),
	],
)
@patch('isoinstall.lib.installer.Partitioner')
@patch('isoinstall.lib.installer.wipe_disk')
@patch('isoinstall.lib.installer.deactivate_volume_groups')
def test_rejected_selection_leaves_disks_untouched(
	_mock_deactivate: MagicMock,
	mock_wipe: MagicMock,
	mock_partitioner: MagicMock,
	sizes: list[int],
	selection: dict[int, int],
	message: str,
	fake_ui: FakeUI,
) -> None:
	disks = [make_disk(ordinal, f'/dev/sd{"abcd"[ordinal]}', size_gib=size) for ordinal, size in enumerate(sizes)]
	config = InstallConfig().merge({'filesys': 'zfs (RAID10)', 'disk_selection': selection})
	installer = Installer(RunEnvironment(), config, fake_ui, inventory=StaticInventory(disks), locales=LocaleInfo())

	with pytest.raises(DiskError, match=message):
		installer._provision(MagicMock())

	mock_wipe.assert_not_called()
	mock_partitioner.assert_not_called()
