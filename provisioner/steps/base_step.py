"""
Base Step class for the provisioning sequence.
All steps inherit from this base.
"""

from abc import ABC, abstractmethod
from typing import Any

from ..config import ProvisionSettings, get_settings
from ..core.executor import CommandExecutor
from ..core.file_manager import FileManager
from ..core.logger import StepLogger


class BaseStep(ABC):
    """
    Abstract base class for provisioning steps.
    Provides the shared executor, file manager and logger; tests inject a
    fake executor to run steps without touching the host.
    """

    def __init__(
        self,
        name: str,
        settings: ProvisionSettings = None,
        executor: CommandExecutor = None,
        file_manager: FileManager = None,
    ):
        self.name = name
        self.settings = settings or get_settings()
        self.logger = StepLogger(name)
        self.executor = executor or CommandExecutor(
            working_dir=self.settings.home_dir,
            logger=self.logger,
        )
        self.file_manager = file_manager or FileManager(
            base_dir=self.settings.home_dir,
            logger=self.logger,
        )

    @abstractmethod
    async def run(self, *args, **kwargs) -> Any:
        """Execute the step. Failures raise ProvisioningError."""
        pass

    def log_step(self, message: str, step: int = None) -> None:
        """Log a step in the workflow."""
        self.logger.step(message, step)

    def log_success(self, message: str) -> None:
        """Log a success."""
        self.logger.success(message)
