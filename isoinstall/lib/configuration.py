from __future__ import annotations

import ipaddress
import json
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import UnknownFilesystemFormat
from .models.filesystem import FilesystemType
from .models.product import Product
from .output import debug, warn


class ZfsOptions(BaseModel):
	model_config = ConfigDict(extra='forbid', validate_assignment=True)

	ashift: int | None = 12
	compress: str = 'on'
	checksum: str = 'on'
	copies: int = 1
	arc_max: int = 0  # MiB, 0 means ZFS default


class BtrfsOptions(BaseModel):
	model_config = ConfigDict(extra='forbid', validate_assignment=True)

	compress: Literal['on', 'off', 'zlib', 'lzo', 'zstd'] | None = None

	def mount_options(self) -> list[str]:
		match self.compress:
			case None | 'off':
				return []
			case 'on':
				return ['compress']
			case _:
				return [f'compress={self.compress}']


class InstallConfig(BaseModel):
	"""
	The answers driving one installation run.

	New values are only ever merged in through :meth:`merge`, which refuses
	unknown keys before anything is applied.
	"""
	model_config = ConfigDict(extra='forbid', validate_assignment=True)

	autoreboot: bool = True

	filesys: FilesystemType = FilesystemType.Ext4
	hdsize: float | None = None
	swapsize: float | None = None
	maxroot: float | None = None
	minfree: float | None = None
	maxvz: float | None = None
	zfs_opts: ZfsOptions = Field(default_factory=ZfsOptions)
	btrfs_opts: BtrfsOptions = Field(default_factory=BtrfsOptions)
	target_hd: str | None = None
	# selection slot -> disk inventory ordinal
	disk_selection: dict[int, int] = Field(default_factory=dict)

	country: str | None = None
	timezone: str = 'Europe/Vienna'
	keymap: str = 'en-us'

	password: str | None = None
	mailto: str = 'mail@example.invalid'

	mngmt_nic: str | None = None
	hostname: str | None = None
	domain: str | None = None
	cidr: str | None = None
	gateway: str | None = None
	dns: str | None = None

	@field_validator('filesys', mode='before')
	@classmethod
	def parse_filesystem(cls, value: Any) -> FilesystemType:
		try:
			return FilesystemType.parse(value)
		except UnknownFilesystemFormat as err:
			raise ValueError(str(err)) from err

	@field_validator('cidr')
	@classmethod
	def validate_cidr(cls, value: str | None) -> str | None:
		if value is not None:
			ipaddress.ip_interface(value)
		return value

	@property
	def fqdn(self) -> str:
		return f'{self.hostname}.{self.domain}'

	@property
	def ip_addr(self) -> str | None:
		if not self.cidr:
			return None
		return str(ipaddress.ip_interface(self.cidr).ip)

	@property
	def ip_version(self) -> int | None:
		if not self.cidr:
			return None
		return ipaddress.ip_interface(self.cidr).version

	def merge(self, values: dict[str, Any]) -> InstallConfig:
		for key in sorted(values):
			if key not in type(self).model_fields:
				raise ValueError(f"unknown key '{key}'")

		merged = self.model_dump()
		for key, value in values.items():
			# option groups are updated, not replaced
			if key.endswith('_opts') and isinstance(value, dict):
				merged[key] = {**merged[key], **value}
			else:
				merged[key] = value

		candidate = self.model_validate(merged)

		for key in values:
			setattr(self, key, getattr(candidate, key))

		return self

	@classmethod
	def create(cls, product: Product, kernel_cmdline: str = '', default_arc_max: int = 0) -> InstallConfig:
		config = cls()
		config.zfs_opts.arc_max = default_arc_max
		config.merge(parse_kernel_cmdline(kernel_cmdline, product))
		return config

	def load_file(self, path: Path) -> InstallConfig:
		debug(f'Loading answers from {path}')

		try:
			values = json.loads(path.read_text())
		except (OSError, json.JSONDecodeError) as err:
			raise ValueError(f'Unable to read configuration {path}: {err}') from err

		try:
			return self.merge(values)
		except ValidationError as err:
			raise ValueError(f'Invalid configuration {path}: {err}') from err


_SIZE_OVERRIDE = r'{}=(\d+(?:\.\d+)?)(?:\s|$)'


def parse_kernel_cmdline(cmdline: str, product: Product) -> dict[str, Any]:
	"""
	Picks up the size and filesystem overrides which can be passed on the
	kernel command line of the installation medium.
	"""
	values: dict[str, Any] = {}

	if match := re.search(r'\s(ext4|xfs)(\s.*)?$', cmdline):
		values['filesys'] = match.group(1)

	keys = ['hdsize', 'swapsize', 'maxroot', 'minfree']
	if product == Product.PVE:
		keys.append('maxvz')

	for key in keys:
		if match := re.search(_SIZE_OVERRIDE.format(key), cmdline, re.IGNORECASE):
			values[key] = float(match.group(1))

	return values


class CountryInfo(BaseModel):
	model_config = ConfigDict(extra='ignore')

	name: str | None = None
	mirror: str | None = None


class KeymapInfo(BaseModel):
	model_config = ConfigDict(extra='ignore')

	name: str | None = None
	x11: str | None = None
	kvm: str | None = None


class LocaleInfo(BaseModel):
	model_config = ConfigDict(extra='ignore')

	country: dict[str, CountryInfo] = Field(default_factory=dict)
	kmap: dict[str, KeymapInfo] = Field(default_factory=dict)

	@classmethod
	def load(cls, path: Path) -> LocaleInfo:
		try:
			return cls.model_validate_json(path.read_text())
		except (OSError, ValidationError) as err:
			warn(f'Unable to load locale information from {path}: {err}')
			return cls()

	def mirror(self, country: str | None) -> str | None:
		if country and (info := self.country.get(country)):
			return info.mirror
		return None

	def x11_keymap(self, keymap: str) -> str:
		if (info := self.kmap.get(keymap)) and info.x11:
			return info.x11
		return 'us'

	def kvm_keymap(self, keymap: str) -> str:
		if (info := self.kmap.get(keymap)) and info.kvm:
			return info.kvm
		return 'en-us'
