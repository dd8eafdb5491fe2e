from .attempt_store import InMemoryAttemptStore
from .config import ScribeConfig, load_config

__all__ = ["ScribeConfig", "load_config", "InMemoryAttemptStore"]
