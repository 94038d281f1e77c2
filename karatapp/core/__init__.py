"""Core components.

- Container: owns the external resources
- DataStore: transactional access to the row store
- initialize: application startup
"""

from .container import Container
from .datastore import DataStore
from .initialize import initialize_application

__all__ = ["Container", "DataStore", "initialize_application"]
