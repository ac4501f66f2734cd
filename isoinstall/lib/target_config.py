from __future__ import annotations

import shutil
from dataclasses import dataclass

from .configuration import InstallConfig, LocaleInfo
from .exceptions import InstallationError, SysCallError
from .general import SysCommand, run_best_effort
from .hardware import RunEnvironment
from .models.device import BootDeviceInfo
from .models.filesystem import StorageBackend
from .models.product import Product
from .output import debug, info, warn
from .target import TargetSystem

POSTFIX_MAIN_CF = """\
# See /usr/share/postfix/main.cf.dist for a commented, more complete version

myhostname=__FQDN__

smtpd_banner = $myhostname ESMTP $mail_name (Debian/GNU)
biff = no

# appending .domain is the MUA's job.
append_dot_mydomain = no

# Uncomment the next line to generate "delayed mail" warnings
#delay_warning_time = 4h

alias_maps = hash:/etc/aliases
alias_database = hash:/etc/aliases
mydestination = $myhostname, localhost.$mydomain, localhost
relayhost =
mynetworks = 127.0.0.0/8
inet_interfaces = loopback-only
recipient_delimiter = +

compatibility_level = 2

"""

_CLAMAV_DB_FILES = ('main.cvd', 'bytecode.cvd', 'daily.cvd', 'safebrowsing.cvd')


def zfs_storage_config(pool_name: str) -> str:
	return (
		'dir: local\n'
		'\tpath /var/lib/vz\n'
		'\tcontent iso,vztmpl,backup,import\n'
		'\n'
		'zfspool: local-zfs\n'
		f'\tpool {pool_name}/data\n'
		'\tsparse\n'
		'\tcontent images,rootdir\n'
	)


def btrfs_storage_config() -> str:
	return (
		'dir: local\n'
		'\tpath /var/lib/vz\n'
		'\tcontent iso,vztmpl,backup\n'
		'\tdisable\n'
		'\n'
		'btrfs: local-btrfs\n'
		'\tpath /var/lib/pve/local-btrfs\n'
		'\tcontent iso,vztmpl,backup,images,rootdir,import\n'
	)


def lvm_thin_storage_config() -> str:
	return (
		'dir: local\n'
		'\tpath /var/lib/vz\n'
		'\tcontent iso,vztmpl,backup,import\n'
		'\n'
		'lvmthin: local-lvm\n'
		'\tthinpool data\n'
		'\tvgname pve\n'
		'\tcontent rootdir,images\n'
	)


def local_storage_config() -> str:
	return (
		'dir: local\n'
		'\tpath /var/lib/vz\n'
		'\tcontent iso,vztmpl,backup,rootdir,images,import\n'
	)


def storage_config(backend: StorageBackend, has_data_volume: bool, pool_name: str) -> str:
	match backend:
		case StorageBackend.Zfs:
			return zfs_storage_config(pool_name)
		case StorageBackend.Btrfs:
			return btrfs_storage_config()
		case StorageBackend.Lvm if has_data_volume:
			return lvm_thin_storage_config()
		case _:
			return local_storage_config()


@dataclass(frozen=True)
class FstabEntries:
	root: str | None = None
	esp: str | None = None
	swap: str | None = None


def render_fstab(entries: FstabEntries) -> str:
	fstab = '# <file system> <mount point> <type> <options> <dump> <pass>\n'

	if entries.root:
		fstab += f'{entries.root}\n'

	if entries.esp:
		fstab += f'{entries.esp} /boot/efi vfat defaults 0 1\n'

	if entries.swap:
		fstab += f'{entries.swap} none swap sw 0 0\n'

	fstab += 'proc /proc proc defaults 0 0\n'
	return fstab


class TargetConfigurator:
	"""
	Writes the configuration of the freshly extracted system: network,
	name resolution, mounts, locale and the product specific bits.
	"""

	def __init__(
		self,
		target: TargetSystem,
		config: InstallConfig,
		env: RunEnvironment,
		locales: LocaleInfo,
	) -> None:
		self.target = target
		self.config = config
		self.env = env
		self.locales = locales

	def configure_hosts(self) -> None:
		hostname = self.config.hostname

		hosts = (
			'127.0.0.1 localhost.localdomain localhost\n'
			f'{self.config.ip_addr} {self.config.fqdn} {hostname}\n\n'
			'# The following lines are desirable for IPv6 capable hosts\n\n'
			'::1     ip6-localhost ip6-loopback\n'
			'fe00::0 ip6-localnet\n'
			'ff00::0 ip6-mcastprefix\n'
			'ff02::1 ip6-allnodes\n'
			'ff02::2 ip6-allrouters\n'
			'ff02::3 ip6-allhosts\n'
		)

		self.target.write_file('/etc/hosts', hosts)
		self.target.write_file('/etc/hostname', f'{hostname}\n')

		if not self.env.is_test_mode:
			run_best_effort(['hostname', str(hostname)])

	def render_interfaces(self) -> str:
		ntype = 'inet' if self.config.ip_version == 4 else 'inet6'
		ethdev = self.config.mngmt_nic
		cidr = self.config.cidr
		gateway = self.config.gateway

		ifaces = 'auto lo\niface lo inet loopback\n\n'

		if self.env.product.bridged_network:
			ifaces += f'iface {ethdev} {ntype} manual\n'
			ifaces += (
				f'\nauto vmbr0\niface vmbr0 {ntype} static\n'
				f'\taddress {cidr}\n'
				f'\tgateway {gateway}\n'
				f'\tbridge-ports {ethdev}\n'
				'\tbridge-stp off\n'
				'\tbridge-fd 0\n'
			)
		else:
			ifaces += (
				f'auto {ethdev}\n'
				f'iface {ethdev} {ntype} static\n'
				f'\taddress {cidr}\n'
				f'\tgateway {gateway}\n'
			)

		for name in self.env.network_interfaces:
			if name == ethdev:
				continue
			ifaces += f'\niface {name} {ntype} manual\n'

		return ifaces

	def configure_interfaces(self) -> None:
		self.target.write_file('/etc/network/interfaces', self.render_interfaces())

	def configure_dns(self) -> None:
		self.target.write_file('/etc/resolv.conf', f'search {self.config.domain}\nnameserver {self.config.dns}\n')

	def write_fstab(self, entries: FstabEntries) -> None:
		self.target.write_file('/etc/fstab', render_fstab(entries))
		self.target.write_file('/etc/mtab', '')

	def install_helpers(self) -> None:
		"""
		Keeps services from starting while packages get configured inside the
		chroot, and turns the boot loader updates into no-ops until the
		system is made bootable.
		"""
		try:
			shutil.copy(self.env.lib_dir / 'policy-disable-rc.d', self.target.path('/usr/sbin/policy-rc.d'))
		except OSError as err:
			raise InstallationError('unable to copy policy-rc.d') from err

		try:
			shutil.copy(self.env.lib_dir / 'fake-start-stop-daemon', self.target.path('/sbin/'))
		except OSError as err:
			raise InstallationError('unable to copy start-stop-daemon') from err

		self.target.diversion_add('/sbin/start-stop-daemon', '/sbin/fake-start-stop-daemon')
		self.target.diversion_add('/usr/sbin/update-grub', '/bin/true')
		self.target.diversion_add('/usr/sbin/update-initramfs', '/bin/true')

	def remove_boot_diversions(self) -> None:
		self.target.diversion_remove('/usr/sbin/update-grub')
		self.target.diversion_remove('/usr/sbin/update-initramfs')

	def remove_helpers(self) -> None:
		self.target.path('/usr/sbin/policy-rc.d').unlink(missing_ok=True)
		self.target.diversion_remove('/sbin/start-stop-daemon')

	def create_machine_id(self) -> None:
		try:
			machine_id = SysCommand(['systemd-id128', 'new']).decode()
		except SysCallError as err:
			raise InstallationError('unable to create a new machine-id') from err

		if not machine_id:
			raise InstallationError('unable to create a new machine-id')

		self.target.write_file('/etc/machine-id', f'{machine_id}\n')

		try:
			shutil.copy('/etc/hostid', self.target.path('/etc/'))
		except OSError as err:
			raise InstallationError('unable to copy hostid') from err

	def set_install_mode(self, enabled: bool) -> None:
		marker = self.target.path('/proxmox_install_mode')
		if enabled:
			marker.touch()
		else:
			marker.unlink(missing_ok=True)

	def preseed_debconf(self, boot_devices: list[BootDeviceInfo]) -> None:
		grub_install_devices = ', '.join(dev.install_device for dev in boot_devices)

		# keyboard-configuration/xkb-keymap is used by console-setup
		xkmap = self.locales.x11_keymap(self.config.keymap)

		self.target.debconf_set(
			'locales locales/default_environment_locale select en_US.UTF-8\n'
			'locales locales/locales_to_be_generated select en_US.UTF-8 UTF-8\n'
			'samba-common samba-common/dhcp boolean false\n'
			'samba-common samba-common/workgroup string WORKGROUP\n'
			'postfix postfix/main_mailer_type select No configuration\n'
			f'keyboard-configuration keyboard-configuration/xkb-keymap select {xkmap}\n'
			'd-i debian-installer/locale select en_US.UTF-8\n'
			f'grub-pc grub-pc/install_devices select {grub_install_devices}\n'
		)

	def configure_postfix(self) -> None:
		self.target.path('/etc/mailname').unlink(missing_ok=True)
		self.target.write_file('/etc/postfix/main.cf', POSTFIX_MAIN_CF.replace('__FQDN__', self.config.fqdn, 1))

		# make sure all postfix directories exist
		self.target.run_best_effort(['/usr/sbin/postfix', 'check'])
		# cleanup mail queue
		self.target.run_best_effort(['/usr/sbin/postsuper', '-d', 'ALL'])
		# /etc/aliases is shipped in the base image
		self.target.run_best_effort(['/usr/bin/newaliases'])

	def configure_timezone(self) -> None:
		timezone = self.config.timezone

		localtime = self.target.path('/etc/localtime')
		localtime.unlink(missing_ok=True)
		localtime.symlink_to(f'/usr/share/zoneinfo/{timezone}')

		self.target.write_file('/etc/timezone', f'{timezone}\n')

	def configure_apt(self) -> None:
		if mirror := self.locales.mirror(self.config.country):
			sources = self.target.path('/etc/apt/sources.list')
			try:
				sources.write_text(sources.read_text().replace('ftp.debian.org', mirror, 1))
			except OSError as err:
				warn(f'Unable to set apt mirror {mirror}: {err}')

		# avoids a cron job warning if the file does not exist
		self.target.write_file('/var/lib/apt/extended_states', '')

	def allow_root_ssh_login(self) -> None:
		sshd_config = self.target.path('/etc/ssh/sshd_config')
		if not sshd_config.exists():
			debug(f'{sshd_config} does not exist')
			return

		lines = sshd_config.read_text().splitlines(keepends=True)
		for index, line in enumerate(lines):
			if line.startswith(('PermitRootLogin', '#PermitRootLogin')):
				lines[index] = 'PermitRootLogin yes\n'

		sshd_config.write_text(''.join(lines))

	def install_clamav_db(self) -> None:
		srcdir = self.env.iso_dir / 'proxmox' / 'clamav'

		for name in _CLAMAV_DB_FILES:
			try:
				shutil.copy(srcdir / name, self.target.path('/var/lib/clamav'))
			except OSError as err:
				raise InstallationError(f"installation of clamav db file '{name}' failed") from err

		self.target.chown('/var/lib/clamav', 'clamav', recursive=True)

		# the on-access scanner blocks file access and needs explicit configuration
		service = self.target.path('/etc/systemd/system/multi-user.target.wants/clamav-clamonacc.service')
		try:
			service.unlink()
		except OSError as err:
			warn(f'failed to disable clamav-clamonacc.service - {err}')

	def save_installer_settings(self) -> None:
		match self.env.product:
			case Product.PMG:
				self.install_clamav_db()
			case Product.PVE:
				country = (self.config.country or '').upper()
				self.target.debconf_set(f'pve-manager pve-manager/country string {country}\n')

	def set_root_password(self) -> None:
		info('Setting root password')
		password = self.config.password or ''
		self.target.run(['/usr/sbin/chpasswd'], 'unable to set root password', stdin=f'root:{password}\n')

	def configure_product(self, backend: StorageBackend, has_data_volume: bool, pool_name: str) -> None:
		mailto = self.config.mailto

		match self.env.product:
			case Product.PMG:
				self.target.write_file('/etc/pmg/pmg.conf', f'section: admin\n\temail {mailto}\n')

			case Product.PVE:
				tmpdir = self.target.path('/tmp/pve')
				tmpdir.mkdir(parents=True, exist_ok=True)

				vnc_keymap = self.locales.kvm_keymap(self.config.keymap)
				(tmpdir / 'datacenter.cfg').write_text(f'keyboard: {vnc_keymap}\n')
				(tmpdir / 'user.cfg').write_text(f'user:root@pam:1:0:::{mailto}::\n')
				(tmpdir / 'storage.cfg').write_text(storage_config(backend, has_data_volume, pool_name))

				try:
					self.target.run(
						['/usr/bin/create_pmxcfs_db', '/tmp/pve', '/var/lib/pve-cluster/config.db'],
						'unable to create cluster configuration database',
					)
				finally:
					shutil.rmtree(tmpdir, ignore_errors=True)

			case Product.PBS:
				base_cfg_path = '/etc/proxmox-backup'
				self.target.path(base_cfg_path).mkdir(parents=True, exist_ok=True)

				self.target.chown(base_cfg_path, 'backup', recursive=True)
				self.target.chmod(base_cfg_path, '0700')

				user_cfg = f'{base_cfg_path}/user.cfg'
				self.target.write_file(user_cfg, f'user: root@pam\n\temail {mailto}\n')
				self.target.chown(user_cfg, 'root', 'backup')
				self.target.chmod(user_cfg, '0640')