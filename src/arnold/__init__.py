"""Arnold: unattended task executor for a coding agent."""

from arnold.config import VERSION

__version__ = VERSION
