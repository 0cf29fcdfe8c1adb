from .http import HttpRetrievalGateway
from .indexer import RetrievalIndexer
from .memory import InMemoryRetrievalGateway

__all__ = ["HttpRetrievalGateway", "InMemoryRetrievalGateway", "RetrievalIndexer"]
