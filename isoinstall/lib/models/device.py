from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

KiB = 1024
MiB = 1024 * KiB
GiB = 1024 * MiB

SECTOR_SIZE = 512


@dataclass(frozen=True)
class BlockDevice:
	"""
	Immutable inventory snapshot of one candidate disk.
	``size_sectors`` is always counted in 512 byte units, regardless of
	the logical block size the disk reports.
	"""
	ordinal: int
	path: str
	size_sectors: int
	model: str
	logical_block_size: int
	sys_path: str

	@property
	def size_bytes(self) -> int:
		return self.size_sectors * SECTOR_SIZE

	@property
	def size_kib(self) -> int:
		return self.size_sectors // 2

	@property
	def size_gib(self) -> float:
		return self.size_bytes / GiB

	@property
	def is_4kn(self) -> bool:
		return self.logical_block_size == 4096

	def table_data(self) -> dict[str, Any]:
		return {
			'#': self.ordinal,
			'path': self.path,
			'size': f'{self.size_gib:.2f} GiB',
			'model': self.model,
			'sector size': self.logical_block_size,
		}


@dataclass(frozen=True)
class BootDeviceInfo:
	devname: str
	os_partition_path: str
	esp_partition_path: str | None
	logical_block_size: int
	stable_by_id_path: str | None = None

	@property
	def is_4kn(self) -> bool:
		return self.logical_block_size == 4096

	@property
	def install_device(self) -> str:
		return self.stable_by_id_path or self.devname


@dataclass(frozen=True)
class PartitionResult:
	os_size_kib: int
	os_partition_path: str
	esp_partition_path: str

	@property
	def os_size_sectors(self) -> int:
		return self.os_size_kib * 2


@dataclass(frozen=True)
class VolumeLayout:
	root_device: str
	swap_device: str | None = None
	data_device: str | None = None


class LsblkInfo(BaseModel):
	name: str
	path: Path
	type: str | None = None
	children: list[LsblkInfo] = Field(default_factory=list)

	@classmethod
	def fields(cls) -> list[str]:
		return [field.alias or name for name, field in cls.model_fields.items() if name != 'children']

	def flatten(self) -> list[LsblkInfo]:
		entries = [self]
		for child in self.children:
			entries += child.flatten()
		return entries


class LsblkOutput(BaseModel):
	blockdevices: list[LsblkInfo]


class ZpoolImportInfo(BaseModel):
	name: str
	id: str | None = None
	state: str | None = None
	status: str | None = None
	action: str | None = None


class LvmPvEntry(BaseModel):
	pv_name: str
	vg_uuid: str


class LvmPvReport(BaseModel):
	pv: list[LvmPvEntry] = Field(default_factory=list)


class LvmReportOutput(BaseModel):
	report: list[LvmPvReport] = Field(default_factory=list)

	def physical_volumes(self) -> list[LvmPvEntry]:
		return [pv for report in self.report for pv in report.pv]
