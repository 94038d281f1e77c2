from .server import ApiServer

__all__ = ["ApiServer"]
