"""Chat domain exports."""

from .images import ImageIngestion
from .indicators import TypingCoordinator
from .service import MessageRouter

__all__ = [
	"ImageIngestion",
	"MessageRouter",
	"TypingCoordinator",
]
