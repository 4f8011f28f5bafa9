from .base import TaskAdapter
from .klap import KlapClient
from .submagic import SubmagicClient

__all__ = ["TaskAdapter", "KlapClient", "SubmagicClient"]
