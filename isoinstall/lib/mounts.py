from __future__ import annotations

from collections.abc import Callable
from contextlib import ExitStack
from pathlib import Path
from types import TracebackType
from typing import Any

from .disk.utils import mount, umount
from .exceptions import DiskError, SysCallError
from .general import SysCommand
from .output import debug


class MountStack:
	"""
	Every mount made through this stack registers its unmount at the same
	time. Leaving the context releases all of them in reverse order,
	whether the installation succeeded or not.

	Unmounting is best effort, a busy mount point is logged but does not
	hide the error which caused the unwinding.
	"""

	def __init__(self) -> None:
		self._stack = ExitStack()

	def __enter__(self) -> MountStack:
		self._stack.__enter__()
		return self

	def __exit__(
		self,
		exc_type: type[BaseException] | None,
		exc_value: BaseException | None,
		traceback: TracebackType | None,
	) -> bool | None:
		return self._stack.__exit__(exc_type, exc_value, traceback)

	def close(self) -> None:
		self._stack.close()

	def _release(self, mountpoint: Path, detach_loop: bool = False) -> None:
		if not umount(mountpoint, detach_loop=detach_loop):
			debug(f'Unable to unmount {mountpoint}')

	def mount(
		self,
		dev_path: str | Path,
		mountpoint: Path,
		mount_fs: str | None = None,
		options: list[str] = [],
		detach_loop: bool = False,
	) -> None:
		mount(dev_path, mountpoint, mount_fs=mount_fs, options=options)
		self._stack.callback(self._release, mountpoint, detach_loop)

	def bind(self, source: Path, mountpoint: Path) -> None:
		mount(source, mountpoint, bind=True)
		self._stack.callback(self._release, mountpoint)

	def virtual(self, fs_type: str, mountpoint: Path) -> None:
		mount(fs_type, mountpoint, mount_fs=fs_type)
		self._stack.callback(self._release, mountpoint)

	def chroot_bind(self, target: Path, source: str, mountpoint: str) -> None:
		"""
		Bind mount performed inside the chroot, so the source is resolved
		relative to ``target``.
		"""
		try:
			SysCommand(['chroot', str(target), 'mount', '--bind', source, mountpoint])
		except SysCallError as err:
			raise DiskError(f'unable to re-bindmount {source} on {mountpoint} in chroot') from err

		self._stack.callback(self._release, target / mountpoint.lstrip('/'))

	def callback(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
		self._stack.callback(func, *args, **kwargs)
