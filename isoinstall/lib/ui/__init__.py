from .base import InstallerUI
from .stdio import StdioUI

__all__ = [
	'InstallerUI',
	'StdioUI',
]
