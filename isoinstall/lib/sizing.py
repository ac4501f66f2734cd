"""
Volume sizing rules for swap, the LVM root/data split and the ZFS ARC cap.

All functions here are pure: they take sizes and return sizes, the caller is
responsible for creating anything. Sizes are in KiB unless the name says
otherwise. The thresholds are historical tuning values and are kept together
in :class:`SizingPolicy` so they can be reviewed and replaced in one place.
"""
from __future__ import annotations

from dataclasses import dataclass

from .exceptions import DiskError

KIB_PER_MIB = 1024
KIB_PER_GIB = 1024 * 1024

# 4 MiB (one LVM physical extent) expressed as a KiB mask
_ALIGN_4M_KIB = ~0xFFF


def align_down_4m(size_kib: float) -> int:
	return int(size_kib) & _ALIGN_4M_KIB


@dataclass(frozen=True)
class SizingPolicy:
	# swap, all in MiB
	swap_min_mib: int = 512
	swap_max_mib: int = 8192
	swap_mib_per_disk_gib: int = 128
	swap_floor_large_mib: int = 4096
	swap_floor_large_disk_gib: int = 64
	swap_floor_medium_mib: int = 2048
	swap_floor_medium_disk_gib: int = 32
	swap_small_disk_mib: int = 1024
	swap_small_disk_gib: int = 16

	# root volume breakpoints for products with a separate guest data volume
	root_small_rest_gib: int = 12
	root_medium_rest_gib: int = 48
	root_large_offset_gib: int = 12
	root_default_max_gib: int = 96

	# free space left in the volume group
	cushion_small_disk_gib: int = 32
	cushion_small_kib: int = 4 * KIB_PER_MIB
	cushion_ratio: int = 8
	cushion_large_disk_gib: int = 128
	cushion_max_gib: int = 16

	# thin-pool for guest data
	thinpool_min_data_gib: int = 4
	thinpool_meta_min_gib: int = 1
	thinpool_meta_max_gib: int = 16
	thinpool_meta_percent: int = 1

	# ESP and disk floors
	esp_small_mib: int = 512
	esp_large_mib: int = 1024
	esp_large_disk_gib: int = 100
	disk_hard_min_gib: int = 2
	disk_soft_min_gib: int = 8

	# ZFS ARC
	arc_min_mib: int = 64
	arc_reserved_system_mib: int = 1024


DEFAULT_POLICY = SizingPolicy()


@dataclass(frozen=True)
class LvmSizing:
	"""
	The computed LVM layout. ``data_kib`` is only meaningful when
	``create_thinpool`` is set, the metadata size is then already taken out
	of it.
	"""
	swap_kib: int
	root_kib: int
	data_kib: int
	metadata_kib: int
	reserved_kib: int

	@property
	def create_thinpool(self) -> bool:
		return self.metadata_kib > 0


def compute_swap_size(
	hdsize_kib: int,
	total_memory_mib: int,
	swapsize_gib: float | None = None,
	policy: SizingPolicy = DEFAULT_POLICY,
) -> int:
	if swapsize_gib is not None:
		return int(swapsize_gib * KIB_PER_GIB)

	hdgb = hdsize_kib // KIB_PER_GIB
	ss = int(total_memory_mib)

	if ss < policy.swap_floor_large_mib and hdgb >= policy.swap_floor_large_disk_gib:
		ss = policy.swap_floor_large_mib
	if ss < policy.swap_floor_medium_mib and hdgb >= policy.swap_floor_medium_disk_gib:
		ss = policy.swap_floor_medium_mib
	# a cap, not a reset, so more memory never yields less swap
	if hdgb <= policy.swap_small_disk_gib:
		ss = min(ss, policy.swap_small_disk_mib)
	if ss < policy.swap_min_mib:
		ss = policy.swap_min_mib
	if ss > hdgb * policy.swap_mib_per_disk_gib:
		ss = int(hdgb * policy.swap_mib_per_disk_gib)
	if ss > policy.swap_max_mib:
		ss = policy.swap_max_mib

	return align_down_4m(ss * KIB_PER_MIB)


def check_swap_size(swap_kib: int, hdsize_kib: int) -> None:
	threshold = hdsize_kib / 2
	if swap_kib > threshold:
		raise DiskError(
			f'Swap size {swap_kib / KIB_PER_GIB:.2f} GiB cannot be greater than '
			f'{threshold / KIB_PER_GIB:.2f} GiB (hard disk size / 2)'
		)


def lvm_cushion(os_size_kib: int, policy: SizingPolicy = DEFAULT_POLICY) -> float:
	hdgb = os_size_kib // KIB_PER_GIB

	if hdgb <= policy.cushion_small_disk_gib:
		return policy.cushion_small_kib

	if hdgb > policy.cushion_large_disk_gib:
		return policy.cushion_max_gib * KIB_PER_GIB

	return hdgb / policy.cushion_ratio * KIB_PER_GIB


def thinpool_metadata_size(data_kib: int, policy: SizingPolicy = DEFAULT_POLICY) -> int:
	meta = int(data_kib * policy.thinpool_meta_percent / 100)
	meta = max(meta, policy.thinpool_meta_min_gib * KIB_PER_GIB)
	meta = min(meta, policy.thinpool_meta_max_gib * KIB_PER_GIB)
	return align_down_4m(meta)


def compute_lvm_layout(
	os_size_kib: int,
	swap_kib: int,
	separate_data: bool,
	maxroot_gib: float | None = None,
	minfree_gib: float | None = None,
	maxvz_gib: float | None = None,
	policy: SizingPolicy = DEFAULT_POLICY,
) -> LvmSizing:
	space = lvm_cushion(os_size_kib, policy)
	datasize = 0

	if separate_data:
		if maxroot_gib:
			maxroot_mib = maxroot_gib * KIB_PER_MIB
		else:
			maxroot_mib = policy.root_default_max_gib * KIB_PER_MIB

		rest = os_size_kib - swap_kib
		rest_mib = int(rest / KIB_PER_MIB)

		rootsize_mib: float
		if rest_mib < policy.root_small_rest_gib * KIB_PER_MIB:
			# no point in wasting space, try to get us actually installed
			rootsize_mib = (rest_mib - 4) & ~3
		elif rest_mib < policy.root_medium_rest_gib * KIB_PER_MIB:
			rootsize_mib = int(rest_mib / 2) & ~3
		else:
			rootsize_mib = rest_mib / 4 + policy.root_large_offset_gib * KIB_PER_MIB

		rootsize_mib = min(rootsize_mib, maxroot_mib)
		rootsize = align_down_4m(rootsize_mib * KIB_PER_MIB)

		rest -= rootsize

		minfree = space
		if minfree_gib is not None and minfree_gib * KIB_PER_GIB < rest:
			minfree = minfree_gib * KIB_PER_GIB

		rest = align_down_4m(rest - minfree)

		if maxvz_gib is not None:
			rest = min(rest, int(maxvz_gib * KIB_PER_GIB))

		datasize = rest
		reserved = minfree
	else:
		minfree = minfree_gib * KIB_PER_GIB if minfree_gib is not None else space
		rootsize = align_down_4m(os_size_kib - minfree - swap_kib)
		reserved = minfree

	if rootsize <= 0:
		raise DiskError(f'not enough space for the root volume ({os_size_kib} KiB available)')

	metadata = 0
	if datasize > policy.thinpool_min_data_gib * KIB_PER_GIB:
		metadata = thinpool_metadata_size(datasize, policy)

		# the metadata (and its spare copy) would otherwise be taken out of minfree
		datasize -= 2 * metadata

		# one 4 MiB extent to allow for rounding
		datasize -= 4 * KIB_PER_MIB
	else:
		datasize = 0

	return LvmSizing(
		swap_kib=swap_kib,
		root_kib=rootsize,
		data_kib=datasize,
		metadata_kib=metadata,
		reserved_kib=int(reserved),
	)


def clamp_zfs_arc_max(
	requested_mib: int,
	total_memory_mib: int,
	policy: SizingPolicy = DEFAULT_POLICY,
) -> int:
	"""
	0 means "use the ZFS default" and is passed through unchanged.
	"""
	if requested_mib == 0:
		return 0

	upper = max(policy.arc_min_mib, total_memory_mib - policy.arc_reserved_system_mib)
	return max(policy.arc_min_mib, min(requested_mib, upper))


def esp_size_mib(hdsize_kib: int, policy: SizingPolicy = DEFAULT_POLICY) -> int:
	if hdsize_kib > policy.esp_large_disk_gib * KIB_PER_GIB:
		return policy.esp_large_mib

	return policy.esp_small_mib
