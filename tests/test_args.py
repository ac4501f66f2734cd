from pathlib import Path

import pytest
from pytest import MonkeyPatch

from isoinstall.lib.args import Arguments, parse_args
from isoinstall.lib.models.product import Product
from isoinstall.lib.output import logger


def test_default_args() -> None:
	args = parse_args([])

	assert args == Arguments(
		config=None,
		test_image=None,
		target=Path('/target'),
		iso_dir=Path('/cdrom'),
		lib_dir=Path('/var/lib/proxmox-installer'),
		product=Product.PVE,
		list_disks=False,
		debug=False,
	)
	assert args.test_images == []


def test_correct_parsing_args(tmp_path: Path) -> None:
	answers = tmp_path / 'answers.json'

	args = parse_args(
		[
			'--config',
			str(answers),
			'--test-image',
			'/tmp/disk0.img,/tmp/disk1.img',
			'--target',
			str(tmp_path / 'target'),
			'--product',
			'pbs',
			'--list-disks',
		]
	)

	assert args.config == answers
	assert args.test_images == [Path('/tmp/disk0.img'), Path('/tmp/disk1.img')]
	assert args.target == tmp_path / 'target'
	assert args.product == Product.PBS
	assert args.list_disks


def test_debug_enables_verbose_logging(monkeypatch: MonkeyPatch) -> None:
	monkeypatch.setattr(logger, 'verbose', False)

	parse_args(['--debug'])

	assert logger.verbose


def test_unknown_product() -> None:
	with pytest.raises(SystemExit):
		parse_args(['--product', 'pxe'])
