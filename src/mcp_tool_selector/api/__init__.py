# API package
# Contains API endpoints and request/response models

from . import pipeline, tools

__all__ = ["pipeline", "tools"]
