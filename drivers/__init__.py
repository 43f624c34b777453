from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Generic, TypeVar

from pydantic import BaseModel

if TYPE_CHECKING:
    from services.bridge import Bridge

T = TypeVar("T", bound=BaseModel)


class BaseDriver(ABC, Generic[T]):
    """Abstract base class for the two sides of the bridge."""

    def __init__(self, config: T, bridge: "Bridge"):
        self.config: T = config
        self.bridge = bridge

    @abstractmethod
    async def start(self):
        """Start the driver (connect, authenticate, begin listening).
        Runs until the process is stopped."""

    @abstractmethod
    async def send(self, channel: str, text: str, **kwargs):
        """Send *text* to the given *channel* on this platform."""
