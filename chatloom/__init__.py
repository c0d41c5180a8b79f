"""chatloom - streaming chat and tool orchestration core for coding agents."""

__version__ = "0.1.0"

from chatloom.chat import ChatSession, ChunkEvent, RetryEvent
from chatloom.config import Config
from chatloom.scheduler import ToolScheduler
from chatloom.turn import TurnRunner

__all__ = ["ChatSession", "ChunkEvent", "Config", "RetryEvent", "ToolScheduler", "TurnRunner", "__version__"]
