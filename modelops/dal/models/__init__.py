"""Initialize the models module.

Makes model classes available when the package is imported.
"""

from .document import Document
from .models_base import Base

__all__ = ["Base", "Document"]
