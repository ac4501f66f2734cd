import argparse
from argparse import ArgumentParser
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from pydantic.dataclasses import dataclass as p_dataclass

from .models.product import Product
from .output import logger, warn


@p_dataclass
class Arguments:
	config: Path | None = None
	test_image: str | None = None
	target: Path = Path('/target')
	iso_dir: Path = Path('/cdrom')
	lib_dir: Path = Path('/var/lib/proxmox-installer')
	product: Product = Product.PVE
	list_disks: bool = False
	debug: bool = False

	@property
	def test_images(self) -> list[Path]:
		if not self.test_image:
			return []
		return [Path(image) for image in self.test_image.split(',') if image]


def get_version() -> str:
	try:
		return version('isoinstall')
	except PackageNotFoundError:
		return 'isoinstall version not found'


def define_arguments() -> ArgumentParser:
	parser = ArgumentParser(prog='isoinstall', formatter_class=argparse.ArgumentDefaultsHelpFormatter)
	parser.add_argument(
		'-v',
		'--version',
		action='version',
		default=False,
		version='%(prog)s ' + get_version(),
	)
	parser.add_argument(
		'--config',
		type=Path,
		nargs='?',
		default=None,
		help='JSON answer file, merged over the defaults and the kernel command line',
	)
	parser.add_argument(
		'--test-image',
		type=str,
		nargs='?',
		default=None,
		help='Comma separated list of image files used as disks, enables the test mode',
	)
	parser.add_argument(
		'--target',
		type=Path,
		default=Path('/target'),
		help='Directory the new system is mounted on',
	)
	parser.add_argument(
		'--iso-dir',
		type=Path,
		default=Path('/cdrom'),
		help='Mount point of the installation medium',
	)
	parser.add_argument(
		'--lib-dir',
		type=Path,
		default=Path('/var/lib/proxmox-installer'),
		help='Directory holding the installer helper files and locale information',
	)
	parser.add_argument(
		'--product',
		type=str,
		choices=[product.value for product in Product],
		default=Product.PVE.value,
		help='Product being installed',
	)
	parser.add_argument(
		'--list-disks',
		action='store_true',
		default=False,
		help='List the detected disks and exit',
	)
	parser.add_argument(
		'--debug',
		action='store_true',
		default=False,
		help='Adds debug info into the log and echoes it to the terminal',
	)
	return parser


def parse_args(argv: list[str] | None = None) -> Arguments:
	argparse_args = vars(define_arguments().parse_args(argv))
	args = Arguments(**argparse_args)

	if args.debug:
		logger.verbose = True
		warn(f'Warning: --debug mode will write certain credentials to {logger.path}!')

	return args
