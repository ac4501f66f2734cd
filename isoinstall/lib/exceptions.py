class RequirementError(Exception):
	pass


class DiskError(Exception):
	pass


class UnknownFilesystemFormat(Exception):
	pass


class SysCallError(Exception):
	def __init__(self, message: str, exit_code: int | None = None, worker_log: bytes = b'') -> None:
		super().__init__(message)
		self.message = message
		self.exit_code = exit_code
		self.worker_log = worker_log


class HardwareIncompatibilityError(Exception):
	pass


class InstallationError(Exception):
	pass


class UserAbort(Exception):
	"""
	Raised when the user explicitly declines a confirmation prompt.
	The front-end already knows about the decision, so no further
	error dialog is shown for it.
	"""


class BootloaderError(Exception):
	def __init__(self, errors: list[str]) -> None:
		self.errors = errors
		super().__init__(self.summary())

	def summary(self) -> str:
		text = 'bootloader setup errors:\n'
		text += ''.join(f'- {err}\n' for err in self.errors)
		return text
