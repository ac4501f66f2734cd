from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from isoinstall.lib.bootloader import BootloaderInstaller, detect_kernel_abi
from isoinstall.lib.exceptions import BootloaderError, InstallationError
from isoinstall.lib.models.device import BootDeviceInfo
from isoinstall.lib.target import TargetSystem


def _boot_devices(count: int, logical_block_size: int = 512) -> list[BootDeviceInfo]:
	return [
		BootDeviceInfo(
			devname=f'/dev/sd{letter}',
			os_partition_path=f'/dev/sd{letter}3',
			esp_partition_path=f'/dev/sd{letter}2',
			logical_block_size=logical_block_size,
		)
		for letter in 'abcdefgh'[:count]
	]


@pytest.fixture
def target(tmp_path: Path) -> TargetSystem:
	root = tmp_path / 'target'
	grub_efi = root / 'boot/efi/EFI/proxmox/grubx64.efi'
	grub_efi.parent.mkdir(parents=True)
	grub_efi.write_bytes(b'grub')
	return TargetSystem(root)


def test_detect_kernel_abi(tmp_path: Path) -> None:
	modules = tmp_path / 'lib/modules'
	(modules / '6.8.12-4-pve').mkdir(parents=True)
	(modules / '6.1.0-26-amd64').mkdir()

	assert detect_kernel_abi(tmp_path) == '6.8.12-4-pve'

	(modules / '6.8.12-5-pve').mkdir()
	with pytest.raises(InstallationError, match='multiple kernels'):
		detect_kernel_abi(tmp_path)


def test_detect_kernel_abi_none(tmp_path: Path) -> None:
	(tmp_path / 'lib/modules/6.1.0-26-amd64').mkdir(parents=True)

	with pytest.raises(InstallationError, match='unable to detect kernel version'):
		detect_kernel_abi(tmp_path)


@patch.object(TargetSystem, 'run')
def test_failure_on_one_disk_does_not_stop_the_others(mock_run: MagicMock, target: TargetSystem) -> None:
	def _run(cmd: list[str], failure: str, **kwargs) -> None:
		if cmd[:2] == ['proxmox-boot-tool', 'init'] and cmd[2] == '/dev/sdb2':
			raise InstallationError(failure)

	mock_run.side_effect = _run
	installer = BootloaderInstaller(target, _boot_devices(3), 'efi', use_proxmox_boot_tool=True)

	with pytest.raises(BootloaderError) as exc_info:
		installer.install('6.8.12-4-pve')

	commands = [call.args[0] for call in mock_run.call_args_list]
	assert commands == [
		['/usr/sbin/update-initramfs', '-c', '-k', '6.8.12-4-pve'],
		['proxmox-boot-tool', 'init', '/dev/sda2'],
		['proxmox-boot-tool', 'init', '/dev/sdb2'],
		['proxmox-boot-tool', 'init', '/dev/sdc2'],
		['/usr/sbin/update-grub'],
	]

	assert exc_info.value.errors == ["unable to init ESP and install proxmox-boot loader on '/dev/sdb2'"]
	assert exc_info.value.summary() == (
		"bootloader setup errors:\n- unable to init ESP and install proxmox-boot loader on '/dev/sdb2'\n"
	)


@patch('isoinstall.lib.bootloader.umount', return_value=True)
@patch('isoinstall.lib.bootloader.mount')
@patch.object(TargetSystem, 'run_best_effort', return_value=True)
@patch.object(TargetSystem, 'run')
def test_grub_bios_and_efi(
	mock_run: MagicMock,
	mock_best_effort: MagicMock,
	mock_mount: MagicMock,
	mock_umount: MagicMock,
	target: TargetSystem,
) -> None:
	BootloaderInstaller(target, _boot_devices(2), 'efi').install('6.8.12-4-pve')

	commands = [call.args[0] for call in mock_run.call_args_list]
	assert ['/usr/sbin/grub-install', '--target', 'i386-pc', '--no-floppy', '--bootloader-id=proxmox', '/dev/sda'] in commands
	assert ['/usr/sbin/grub-install', '--target', 'i386-pc', '--no-floppy', '--bootloader-id=proxmox', '/dev/sdb'] in commands
	assert mock_best_effort.call_count == 2
	assert mock_best_effort.call_args.args[0][:3] == ['/usr/sbin/grub-install', '--target', 'x86_64-efi']

	efi_dir = target.path('/boot/efi')
	mock_mount.assert_called_with('/dev/sdb2', efi_dir, mount_fs='vfat')
	assert mock_umount.call_count == 2
	assert (efi_dir / 'EFI/BOOT/BOOTx64.EFI').read_bytes() == b'grub'


@patch('isoinstall.lib.bootloader.umount', return_value=True)
@patch('isoinstall.lib.bootloader.mount')
@patch.object(TargetSystem, 'run_best_effort', return_value=True)
@patch.object(TargetSystem, 'run')
def test_no_legacy_grub_with_4kn_disk(
	mock_run: MagicMock,
	_mock_best_effort: MagicMock,
	_mock_mount: MagicMock,
	_mock_umount: MagicMock,
	target: TargetSystem,
) -> None:
	BootloaderInstaller(target, _boot_devices(1, logical_block_size=4096), 'efi').install('6.8.12-4-pve')

	commands = [call.args[0] for call in mock_run.call_args_list]
	assert not any('i386-pc' in cmd for cmd in commands)


@patch('isoinstall.lib.bootloader.umount', return_value=True)
@patch('isoinstall.lib.bootloader.mount')
@patch.object(TargetSystem, 'run_best_effort', return_value=False)
@patch.object(TargetSystem, 'run')
def test_efi_grub_failure_ignored_on_legacy_boot(
	_mock_run: MagicMock,
	_mock_best_effort: MagicMock,
	_mock_mount: MagicMock,
	mock_umount: MagicMock,
	target: TargetSystem,
) -> None:
	BootloaderInstaller(target, _boot_devices(1), 'bios').install('6.8.12-4-pve')

	mock_umount.assert_called_once()


@patch('isoinstall.lib.bootloader.umount', return_value=True)
@patch('isoinstall.lib.bootloader.mount')
@patch.object(TargetSystem, 'run_best_effort', return_value=False)
@patch.object(TargetSystem, 'run')
def test_efi_grub_failure_on_uefi_boot(
	_mock_run: MagicMock,
	_mock_best_effort: MagicMock,
	_mock_mount: MagicMock,
	mock_umount: MagicMock,
	target: TargetSystem,
) -> None:
	with pytest.raises(BootloaderError) as exc_info:
		BootloaderInstaller(target, _boot_devices(2), 'efi').install('6.8.12-4-pve')

	assert len(exc_info.value.errors) == 2
	assert "failed to prepare EFI boot using Grub on '/dev/sda2'" in exc_info.value.errors[0]
	assert mock_umount.call_count == 2


@patch.object(TargetSystem, 'run')
def test_initramfs_failure_is_reported(mock_run: MagicMock, target: TargetSystem) -> None:
	mock_run.side_effect = InstallationError('unable to install initramfs')

	with pytest.raises(BootloaderError) as exc_info:
		BootloaderInstaller(target, _boot_devices(1), 'efi', use_proxmox_boot_tool=True).install('6.8.12-4-pve')

	assert exc_info.value.errors == ['unable to install initramfs']
