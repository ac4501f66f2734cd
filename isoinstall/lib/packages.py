from __future__ import annotations

import re
from pathlib import Path

from .exceptions import InstallationError, SysCallError
from .general import SysCommand
from .output import info
from .progress import ProgressWindow
from .target import TargetSystem

_SETTING_UP = re.compile(r'Setting up\s+(\S+)')

# mounted into the target while the packages are installed
PKG_MOUNTPOINT = '/tmp/pkg'


def read_file_count(path: Path) -> int:
	try:
		first_line = path.read_text().splitlines()[0]
		return int(first_line.strip())
	except (OSError, IndexError, ValueError) as err:
		raise InstallationError('unable to read base file count') from err


class BaseImageExtractor:
	"""
	Unpacks the squashfs base image into the target. Progress is the
	number of extracted paths relative to the count shipped next to the
	image.
	"""

	def __init__(self, image: Path, file_count: Path) -> None:
		self.image = image
		self.file_count = file_count

	def extract(self, target: Path, progress: ProgressWindow) -> None:
		if not self.image.is_file():
			raise InstallationError(f"unable to open file '{self.image}'")

		files = read_file_count(self.file_count)
		prefix = str(target)
		count = 0
		percent = 0

		def _on_line(line: str) -> None:
			nonlocal count, percent

			if not line.startswith(prefix):
				return

			count += 1
			new_percent = (count * 100) // files
			if new_percent != percent:
				percent = new_percent
				progress.update(min(percent, 100) / 100)

		info(f'Extracting {self.image} to {target}')

		try:
			SysCommand(['unsquashfs', '-f', '-dest', prefix, '-i', str(self.image)], line_callback=_on_line)
		except SysCallError as err:
			raise InstallationError(f'unable to extract base system: {err.message}') from err


class PackageInstaller:
	"""
	Installs the packages shipped on the installation medium into the
	target with dpkg, first unpacking all of them and then configuring them
	in one go.
	"""

	def __init__(self, target: TargetSystem, package_dir: Path, boot_type: str, unsafe_io: bool = False) -> None:
		self.target = target
		self.package_dir = package_dir
		self.boot_type = boot_type
		self._dpkg_opts = ['--force-unsafe-io'] if unsafe_io else []

	def packages(self) -> list[str]:
		return sorted(path.name for path in self.package_dir.glob('*.deb'))

	def wanted(self, deb: str) -> bool:
		# grub-pc and grub-efi-amd64 (w/o -bin) conflict, only install the fitting one
		if 'grub-pc_' in deb and self.boot_type != 'bios':
			return False
		if 'grub-efi-amd64_' in deb and self.boot_type != 'efi':
			return False
		return True

	def unpack(self, progress: ProgressWindow) -> int:
		debs = [deb for deb in self.packages() if self.wanted(deb)]
		total = len(debs) or 1
		count = 0

		for deb in debs:
			progress.update(count / total, f'extracting {deb}')
			info(f'extracting: {deb}')

			self.target.run(
				['dpkg', *self._dpkg_opts, '--force-depends', '--no-triggers', '--unpack', f'{PKG_MOUNTPOINT}/{deb}'],
				f'installation of package {deb} failed',
			)

			count += 1
			progress.update(count / total)

		return count

	def configure(self, progress: ProgressWindow, package_count: int) -> None:
		total = package_count or 1
		count = 0

		# needed for postfix postinst in case no other NIC is active
		self.target.run_best_effort(['ifup', 'lo'])

		def _on_line(line: str) -> None:
			nonlocal count

			if match := _SETTING_UP.search(line):
				count += 1
				progress.update(count / total, f'configuring {match.group(1)}')

		self.target.run(
			['dpkg', *self._dpkg_opts, '--force-confold', '--configure', '-a'],
			'unable to configure packages',
			line_callback=_on_line,
		)
