"""Disk provisioning and system extraction for the Proxmox installation media."""

import os
import sys
import traceback

from .lib.args import Arguments, parse_args
from .lib.configuration import InstallConfig
from .lib.disk.inventory import DiskInventory
from .lib.exceptions import DiskError
from .lib.hardware import RunEnvironment
from .lib.installer import Installer
from .lib.output import FormattedOutput, debug, error, info, logger, warn
from .lib.ui import StdioUI


def _log_sys_info(env: RunEnvironment) -> None:
	# assists in troubleshooting
	debug(f'Product: {env.product.fullname}; boot type: {env.boot_type}; test mode: {env.is_test_mode}')
	debug(f'Memory: {env.total_memory} MiB; kernel cmdline: {env.kernel_cmdline}')


def _build_environment(args: Arguments) -> RunEnvironment:
	return RunEnvironment(
		product=args.product,
		test_images=args.test_images,
		target_dir=args.target,
		iso_dir=args.iso_dir,
		lib_dir=args.lib_dir,
	)


def _build_config(args: Arguments, env: RunEnvironment) -> InstallConfig:
	config = InstallConfig.create(env.product, env.kernel_cmdline, env.default_zfs_arc_max)

	if args.config:
		config.load_file(args.config)

	return config


def main(argv: list[str] | None = None) -> int:
	"""
	Entry point of ``python -m isoinstall``: reads the answers, runs one
	installation and reports the result over stdio.
	"""
	args = parse_args(argv)
	env = _build_environment(args)

	if args.list_disks:
		inventory = DiskInventory(env.test_images)
		print(FormattedOutput.as_table(inventory.list_disks()))
		return 0

	if not env.is_test_mode and os.getuid() != 0:
		error('isoinstall requires root privileges to run. See --help for more.')
		return 1

	_log_sys_info(env)

	try:
		config = _build_config(args, env)
	except ValueError as err:
		error(str(err))
		return 1

	info(f'Installing {env.product.fullname} on {config.filesys.label}')

	ui = StdioUI()
	result = Installer(env, config, ui).run()

	return 0 if result.success else 1


def run_as_a_module() -> None:
	rc = 0
	exc = None

	try:
		rc = main()
	except DiskError as err:
		error(str(err))
		rc = 1
	except Exception as err:
		exc = err
	finally:
		if exc:
			err_text = ''.join(traceback.format_exception(exc))
			error(err_text)

			warn(f'isoinstall experienced the above error, the log file is at "{logger.path}".')
			rc = 1

	sys.exit(rc)


__all__ = [
	'Installer',
	'InstallConfig',
	'RunEnvironment',
	'main',
	'run_as_a_module',
]
