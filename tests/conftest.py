from collections.abc import Iterator
from pathlib import Path

import pytest

from isoinstall.lib.disk.inventory import DiskInventory
from isoinstall.lib.models.device import GiB, BlockDevice
from isoinstall.lib.output import logger
from isoinstall.lib.ui.base import InstallerUI


class FakeUI(InstallerUI):
	"""
	Records everything sent to the front-end. Prompts are answered from
	``answers`` in order, ``True`` once they run out.
	"""

	def __init__(self, answers: list[bool] | None = None) -> None:
		self.answers = list(answers or [])
		self.messages: list[str] = []
		self.errors: list[str] = []
		self.prompts: list[str] = []
		self.progress_updates: list[tuple[float, str]] = []
		self.pages: list[str] = []
		self.result: tuple[bool, str] | None = None
		self.events = 0

	def message(self, text: str) -> None:
		self.messages.append(text)

	def error(self, text: str) -> None:
		self.errors.append(text)

	def prompt(self, text: str) -> bool:
		self.prompts.append(text)
		return self.answers.pop(0) if self.answers else True

	def progress(self, ratio: float, text: str) -> None:
		self.progress_updates.append((ratio, text))

	def finished(self, success: bool, text: str) -> None:
		self.result = (success, text)

	def display_html(self, page: str) -> None:
		self.pages.append(page)

	def process_events(self) -> None:
		self.events += 1


class StaticInventory(DiskInventory):
	def __init__(self, disks: list[BlockDevice]) -> None:
		super().__init__()
		self._disks = disks


def make_disk(
	ordinal: int,
	path: str,
	size_gib: float = 100,
	logical_block_size: int = 512,
	model: str = 'QEMU HARDDISK',
) -> BlockDevice:
	return BlockDevice(
		ordinal=ordinal,
		path=path,
		size_sectors=int(size_gib * GiB) // 512,
		model=model,
		logical_block_size=logical_block_size,
		sys_path=f'/sys/block/{Path(path).name}',
	)


@pytest.fixture(autouse=True)
def log_directory(tmp_path_factory: pytest.TempPathFactory) -> Iterator[Path]:
	previous = logger.directory
	path = tmp_path_factory.mktemp('log')
	logger.set_directory(path)
	yield path
	logger.set_directory(previous)


@pytest.fixture
def fake_ui() -> FakeUI:
	return FakeUI()


@pytest.fixture
def four_disks() -> StaticInventory:
	return StaticInventory(
		[
			make_disk(0, '/dev/sda'),
			make_disk(1, '/dev/sdb'),
			make_disk(2, '/dev/sdc'),
			make_disk(3, '/dev/sdd'),
		]
	)
