from enum import Enum


class Product(Enum):
	PVE = 'pve'
	PMG = 'pmg'
	PBS = 'pbs'
	PDM = 'pdm'

	@property
	def fullname(self) -> str:
		match self:
			case Product.PVE:
				return 'Proxmox VE'
			case Product.PMG:
				return 'Proxmox Mail Gateway'
			case Product.PBS:
				return 'Proxmox Backup Server'
			case Product.PDM:
				return 'Proxmox Datacenter Manager'

	@property
	def bridged_network(self) -> bool:
		return self == Product.PVE

	@property
	def enable_btrfs(self) -> bool:
		return self in (Product.PVE, Product.PBS, Product.PDM)

	@property
	def separates_guest_data(self) -> bool:
		"""
		Whether the product keeps guest images on a dedicated volume
		(LVM thin-pool or ZFS ``data`` dataset) next to the root filesystem.
		"""
		return self == Product.PVE

	@property
	def volume_group(self) -> str:
		return self.value
