from __future__ import annotations

from pathlib import Path
from typing import Any

from .exceptions import InstallationError, SysCallError
from .general import SysCommand
from .output import debug


class TargetSystem:
	"""
	The root of the system being installed, plus the helpers to run
	commands inside it.
	"""

	def __init__(self, root: Path) -> None:
		self.root = root

	def path(self, path: str | Path) -> Path:
		return self.root / str(path).lstrip('/')

	def write_file(self, path: str | Path, content: str) -> Path:
		target = self.path(path)
		target.parent.mkdir(parents=True, exist_ok=True)
		target.write_text(content)
		return target

	def chroot(self, cmd: list[str], **kwargs: Any) -> SysCommand:
		return SysCommand(['chroot', str(self.root), *cmd], **kwargs)

	def run(self, cmd: list[str], failure: str, **kwargs: Any) -> SysCommand:
		try:
			return self.chroot(cmd, **kwargs)
		except SysCallError as err:
			raise InstallationError(failure) from err

	def run_best_effort(self, cmd: list[str], **kwargs: Any) -> bool:
		try:
			self.chroot(cmd, **kwargs)
		except SysCallError as err:
			debug(f'Ignoring failed command in target: {err.message}')
			return False

		return True

	def chown(self, path: str, user: str, group: str | None = None, recursive: bool = False) -> None:
		cmd = ['/bin/chown', *(['-R'] if recursive else []), f'{user}:{group or user}', path]
		self.run(cmd, f"chroot: unable to change owner for '{path}'")

	def chmod(self, path: str, mode: str, recursive: bool = False) -> None:
		cmd = ['/bin/chmod', *(['-R'] if recursive else []), mode, path]
		self.run(cmd, f"chroot: unable to change permission mode for '{path}'")

	def diversion_add(self, cmd: str, new_cmd: str) -> None:
		"""
		Moves ``cmd`` aside with dpkg-divert and puts a link to ``new_cmd``
		in its place.
		"""
		self.run(['dpkg-divert', '--package', 'proxmox', '--add', '--rename', cmd], 'unable to exec dpkg-divert')

		link = self.path(cmd)
		link.unlink(missing_ok=True)
		link.symlink_to(new_cmd)

	def diversion_remove(self, cmd: str) -> None:
		diverted = self.path(f'{cmd}.distrib')

		try:
			diverted.replace(self.path(cmd))
		except OSError as err:
			raise InstallationError(f'unable to remove {cmd} diversion') from err

		self.run(['dpkg-divert', '--remove', cmd], f'unable to remove {cmd} diversion')

	def debconf_set(self, selections: str) -> None:
		cfgfile = '/tmp/debconf.txt'
		self.write_file(cfgfile, selections)

		try:
			self.run_best_effort(['debconf-set-selections', cfgfile])
		finally:
			self.path(cfgfile).unlink(missing_ok=True)
