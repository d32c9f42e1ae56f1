from . import config
from .persister import Persister
from .supervisor import Supervisor

__all__ = ["config", "Persister", "Supervisor"]
